"""
QMP Events and EventListeners

Asynchronous QMP uses `EventListener` objects to listen for events. An
`EventListener` is a FIFO event queue that can be pre-filtered to listen
for only specific events. Each `EventListener` instance receives its own
copy of events that it hears, so events may be consumed without fear or
worry for depriving other listeners of events they need to hear.

Every session owns an `EventDispatcher`, and `Session.events()` creates
and registers a new listener in one step:

.. code:: python

   listener = session.events('SHUTDOWN')
   event = await listener.get()
   print(event.name, event.data)

Listeners may also be iterated asynchronously. Iteration ends once the
listener has been closed, either by `Session.unsubscribe()` or because the
session itself closed, and every event queued before that has been
consumed:

.. code:: python

   async for event in session.events():
       print(event.name)


Filtering
---------

A listener may be created with one or more event names, and with an
optional filtering function. Names are checked first; the filter
function is called second and only for events whose name matched::

   def job1_filter(event: Event) -> bool:
       return isinstance(event.data, dict) and event.data.get('id') == 'job1'

   with session.listener('JOB_STATUS_CHANGE', job1_filter) as listener:
       await session.execute(Command.create('blockdev-backup', {...}))
       async for event in listener:
           if event.data['status'] == 'concluded':
               break

Filtering functions must not raise; an exception from one terminates the
session's reader.


Delivery
--------

Events are delivered to every registered listener in the order they
were read from the wire. Listener queues are unbounded, so a listener
that is never drained grows without limit but never delays the session
or any other listener. Removing a listener clears its queue.
"""

import asyncio
from contextlib import contextmanager
import logging
from typing import (
    Callable,
    Iterable,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from .error import QMPError
from .models import Event


EventNames = Union[str, Iterable[str], None]
EventFilter = Callable[[Event], bool]


class ListenerError(QMPError):
    """
    Generic error class for `EventListener`-related problems.

    :param error_message: Human-readable string describing the error.
    """
    def __init__(self, error_message: str):
        super().__init__(error_message)
        #: Human-readable error string
        self.error_message: str = error_message

    def __str__(self) -> str:
        return self.error_message


class EventListener:
    """
    Selectively listens for events with runtime configurable filtering.

    This class is designed to be directly usable for the most common cases,
    but it can be extended to provide more rigorous control.

    :param names:
        One or more names of events to listen for.
        When not provided, listen for ALL events.
    :param event_filter:
        An optional event filtering function.
        When names are also provided, this acts as a secondary filter.
    """
    def __init__(
        self,
        names: EventNames = None,
        event_filter: Optional[EventFilter] = None,
    ):
        # Queue of 'heard' events yet to be witnessed by a caller.
        # A None entry marks the end of the stream.
        self._queue: 'asyncio.Queue[Optional[Event]]' = asyncio.Queue()

        # Intended as a historical record, NOT a processing queue or backlog.
        self._history: List[Event] = []

        self._closed = False

        #: Primary event filter, based on one or more event names.
        self.names: Set[str] = set()
        if isinstance(names, str):
            self.names.add(names)
        elif names is not None:
            self.names.update(names)

        #: Optional, secondary event filter.
        self.event_filter: Optional[EventFilter] = event_filter

    def __repr__(self) -> str:
        names = sorted(self.names) if self.names else 'ALL'
        state = ' closed' if self._closed else ''
        return f"<{type(self).__name__} names={names}{state}>"

    @property
    def history(self) -> Tuple[Event, ...]:
        """
        A read-only history of all events seen so far.

        This represents *every* event, including those not yet witnessed
        via `get()` or ``async for``. It persists between `clear()`
        calls and is immutable.
        """
        return tuple(self._history)

    @property
    def closed(self) -> bool:
        """`True` once this listener will receive no more events."""
        return self._closed

    def accept(self, event: Event) -> bool:
        """
        Determine if this listener accepts this event.

        The default implementation checks the event against the set of
        names and then the event_filter. It can be overridden to provide
        custom listener behavior.

        :param event: The event under consideration.
        :return: `True`, if this listener accepts this event.
        """
        name_ok = (not self.names) or (event.name in self.names)
        return name_ok and (
            (not self.event_filter) or self.event_filter(event)
        )

    def put(self, event: Event) -> None:
        """
        Conditionally put a new event into the FIFO queue.

        Not intended to be invoked from user code; this is how the
        `EventDispatcher` informs its listeners of new events. Events are
        ignored once the listener has been closed.

        :param event: The new event to put into the FIFO queue.
        """
        if self._closed or not self.accept(event):
            return

        self._history.append(event)
        self._queue.put_nowait(event)

    async def get(self) -> Event:
        """
        Wait for the very next event in this stream.

        If one is already available, return that one.

        :raise ListenerError:
            When the listener has been closed and all events queued
            before that have been consumed.
        """
        event = await self._queue.get()
        if event is None:
            # Leave the marker in place for any other waiters.
            self._queue.put_nowait(None)
            raise ListenerError("Listener is closed")
        return event

    def empty(self) -> bool:
        """
        Return `True` if there are no pending events.
        """
        # Once closed, the end-of-stream marker stays queued.
        return self._queue.qsize() <= (1 if self._closed else 0)

    def clear(self) -> List[Event]:
        """
        Clear this listener of all pending events.

        Called when an `EventListener` is being unregistered, this clears
        the pending FIFO queue synchronously. It can be also be used to
        manually clear any pending events, if desired.

        :return: The cleared events, if any.
        """
        events = []
        end_marker = False
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if event is None:
                end_marker = True
            else:
                events.append(event)

        if end_marker:
            self._queue.put_nowait(None)
        return events

    def close(self) -> None:
        """
        Stop receiving events.

        Events already queued remain available to `get()`; after those,
        `get()` raises `ListenerError` and asynchronous iteration stops.
        """
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def _reopen(self) -> None:
        self.clear()
        if self._closed:
            self._closed = False
            self._queue = asyncio.Queue()

    def __aiter__(self) -> 'EventListener':
        return self

    async def __anext__(self) -> Event:
        """
        Enables the `EventListener` to function as an async iterator.

        It may be used like this:

        .. code:: python

            async for event in listener:
                print(event)

        Iteration ends when the listener is closed and drained.
        """
        try:
            return await self.get()
        except ListenerError:
            raise StopAsyncIteration from None


class EventDispatcher:
    """
    Fans incoming events out to every registered `EventListener`.

    :param logger: Logger to use for registration messages.
    """
    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._listeners: List[EventListener] = []
        self._closed = False
        self.logger = logger or logging.getLogger(__name__)

    def __len__(self) -> int:
        return len(self._listeners)

    @property
    def listeners(self) -> Tuple[EventListener, ...]:
        """The currently registered listeners, in registration order."""
        return tuple(self._listeners)

    def dispatch(self, event: Event) -> None:
        """
        Given a new event, propagate it to all of the active listeners.

        :param event: The event to propagate.
        """
        if self._closed:
            return
        for listener in self._listeners:
            listener.put(event)

    def subscribe(
        self,
        names: EventNames = None,
        event_filter: Optional[EventFilter] = None,
    ) -> EventListener:
        """
        Create and register a new `EventListener`.

        :param names:
            One or more names of events to listen for.
            When not provided, listen for ALL events.
        :param event_filter:
            An optional event filtering function.

        :return: The newly created and active `EventListener`.
        """
        listener = EventListener(names, event_filter)
        self.register_listener(listener)
        return listener

    def register_listener(self, listener: EventListener) -> None:
        """
        Register and activate an `EventListener`.

        A listener that was previously closed is restarted with an empty
        queue.

        :param listener: The listener to activate.
        :raise ListenerError:
            If the given listener is already registered, or the
            dispatcher has been closed.
        """
        if self._closed:
            raise ListenerError("Event dispatcher is closed")
        if listener in self._listeners:
            raise ListenerError("Attempted to re-register existing listener")
        self.logger.debug("Registering %s.", str(listener))
        listener._reopen()  # pylint: disable=protected-access
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        """
        Unregister and deactivate an `EventListener`.

        The removed listener will have its pending events cleared via
        `clear()` and will then be closed. The listener can be
        re-registered later when desired.

        :param listener: The listener to deactivate.
        :raise ListenerError: If the given listener is not registered.
        """
        if listener not in self._listeners:
            raise ListenerError("Listener is not registered")
        self.logger.debug("Removing %s.", str(listener))
        self._listeners.remove(listener)
        listener.clear()
        listener.close()

    @contextmanager
    def listen(self, *listeners: EventListener) -> Iterator[None]:
        r"""
        Context manager: Temporarily listen with an `EventListener`.

        Accepts one or more `EventListener` objects and registers them,
        activating them for the duration of the context block.

        `EventListener` objects will have any pending events in their
        FIFO queue cleared upon exiting the context block, when they are
        deactivated.

        :param \*listeners: One or more EventListeners to activate.
        :raise ListenerError: If the given listener(s) are already active.
        """
        _added = []

        try:
            for listener in listeners:
                self.register_listener(listener)
                _added.append(listener)

            yield

        finally:
            for listener in _added:
                if listener in self._listeners:
                    self.remove_listener(listener)

    @contextmanager
    def listener(
        self,
        names: EventNames = None,
        event_filter: Optional[EventFilter] = None
    ) -> Iterator[EventListener]:
        """
        Context manager: Temporarily listen with a new `EventListener`.

        :param names:
            One or more names of events to listen for.
            When not provided, listen for ALL events.
        :param event_filter:
            An optional event filtering function.
            When names are also provided, this acts as a secondary filter.

        :return: The newly created and active `EventListener`.
        """
        listener = EventListener(names, event_filter)
        with self.listen(listener):
            yield listener

    def close(self) -> None:
        """
        Close every listener and stop dispatching.

        Listeners keep the events already queued, so that consumers can
        drain them before their iteration ends.
        """
        if self._closed:
            return
        self._closed = True
        self.logger.debug("Closing %d listener(s).", len(self._listeners))
        for listener in self._listeners:
            listener.close()
        self._listeners.clear()
