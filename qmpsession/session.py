"""
QMP Session Engine

This module provides the `Session` class, which drives one QMP
conversation over one `Transport`: it reads the server greeting,
negotiates capabilities, and then multiplexes any number of concurrent
command executions and asynchronous event subscriptions over the single
duplex stream.

Basic script-style usage looks like this:

.. code:: python

   session = await open_session('/tmp/qemu.socket', name='vm1')
   reply = await session.execute(Command.create('query-status'))
   print(reply.value)
   await session.close()

A session has two halves. The "upper half" is whatever runs in the
caller's context, such as `Session.execute()`. The "bottom half" is a
pair of tasks owned by the session: a reader that decodes, classifies and
routes every inbound message, and a writer that serializes outbound
messages one at a time. Errors in the bottom half close the session; the
error is logged, recorded as `Session.error`, and delivered to every
caller still waiting for a reply.
"""

import asyncio
from collections import abc
from contextlib import aclosing
from enum import Enum
from functools import wraps
import logging
import socket
from ssl import SSLContext
from typing import (
    Any,
    Awaitable,
    Callable,
    ContextManager,
    Iterable,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
    Union,
    cast,
)

from .codec import MalformedFrameError, decode_stream, encode, serialize
from .correlation import CorrelationTable, DuplicateIDError
from .error import (
    ConnectionClosedError,
    ProtocolError,
    ProtocolSequenceError,
    QMPError,
)
from .events import (
    EventDispatcher,
    EventFilter,
    EventListener,
    EventNames,
)
from .models import (
    Command,
    ErrorResponse,
    Event,
    ExecIDT,
    Greeting,
    Response,
    ServerMessage,
    UnrecognizedMessageError,
    classify,
)
from .negotiate import (
    CapabilityNegotiator,
    NegotiationState,
    UnsupportedCapabilityError,
)
from .transport import (
    DEFAULT_LIMIT,
    SocketAddrT,
    Transport,
    TransportError,
    open_connection,
)
from .util import exception_summary, pretty_traceback


_TaskFN = Callable[[], Awaitable[None]]  # aka ``async def func() -> None``


class SessionState(Enum):
    """QMP session state."""
    #: Waiting for the server greeting.
    AWAITING_GREETING = 0
    #: The capabilities command was sent; waiting for its reply.
    NEGOTIATING = 1
    #: Commands may be executed.
    READY = 2
    #: The session is over, and cannot be reused.
    CLOSED = 3


class SessionNotReadyError(QMPError):
    """
    A command was issued before capabilities negotiation completed.

    :param error_message: Human-readable string describing the error.
    :param state: The `SessionState` seen at the time of the error.
    """
    def __init__(self, error_message: str, state: SessionState):
        super().__init__(error_message)
        #: Human-readable error string
        self.error_message: str = error_message
        #: The state of the session at the time of the error.
        self.state: SessionState = state

    def __str__(self) -> str:
        return self.error_message


class ExecuteError(QMPError):
    """
    Exception raised by `Session.cmd()` on RPC failure.

    :param error_response: The RPC error response object.
    :param sent: The command that caused the failure.
    """
    def __init__(self, error_response: ErrorResponse, sent: Command):
        super().__init__(error_response.error.desc)
        #: The command that caused the failure
        self.sent: Command = sent
        #: The parsed error response
        self.error: ErrorResponse = error_response
        #: The QMP error class
        self.error_class: str = error_response.error.class_
        #: The server's human-readable description
        self.desc: str = error_response.error.desc


F = TypeVar('F', bound=Callable[..., Any])  # pylint: disable=invalid-name


def require(*states: SessionState) -> Callable[[F], F]:
    """
    Decorator: protect a method so it can only be run in certain states.

    :param states: The `SessionState` values that permit this method.
    :raise ConnectionClosedError: When the session is closed.
    :raise SessionNotReadyError: When the session is in any other state.
    """
    def _decorator(func: F) -> F:
        @wraps(func)
        def _wrapper(session: 'Session', *args: Any, **kwargs: Any) -> Any:
            name = type(session).__name__

            if session.state not in states:
                if session.state == SessionState.CLOSED:
                    raise ConnectionClosedError(
                        f"{name} is closed.", session.error
                    )
                allowed = ', '.join(state.name for state in states)
                raise SessionNotReadyError(
                    f"{name} is in state {session.state.name}; "
                    f"this requires {allowed}.",
                    session.state
                )
            return func(session, *args, **kwargs)

        return cast(F, _wrapper)

    return _decorator


_OPEN = (
    SessionState.AWAITING_GREETING,
    SessionState.NEGOTIATING,
    SessionState.READY,
)


class Session:
    """
    Implements a QMP client session over an arbitrary `Transport`.

    Listeners may be subscribed as soon as the session is constructed, so
    that events sent during negotiation are not missed; commands may be
    executed once `establish()` (or `connect()`) has returned.

    :param transport: The channel to the QMP server.
    :param capabilities: QMP capabilities to enable during negotiation.
    :param strict:
        When `True`, any inbound frame that cannot be decoded or
        classified closes the session. When `False`, such frames are
        logged and skipped once the greeting has been received.
    :param name:
        Name used for logging messages, if any. By default, messages
        will log to 'qmpsession.session', but each individual session
        can be given its own logger by giving it a name; messages will
        then log to 'qmpsession.session.${name}'.
    """
    # pylint: disable=too-many-instance-attributes

    #: Logger object for debugging messages from this session.
    logger = logging.getLogger(__name__)

    #: Prefix of all engine-generated command IDs.
    ID_PREFIX = '__qmp#'

    def __init__(self, transport: Transport,
                 capabilities: Iterable[str] = (), *,
                 strict: bool = True,
                 name: Optional[str] = None) -> None:
        #: The nickname for this session, if any.
        self.name: Optional[str] = name
        if self.name is not None:
            self.logger = self.logger.getChild(self.name)

        self._transport = transport
        self._strict = strict
        self._state = SessionState.AWAITING_GREETING
        self._state_changed = asyncio.Event()
        self._closed = asyncio.Event()

        self._negotiator = CapabilityNegotiator(capabilities)
        self._table = CorrelationTable(self.logger)
        self._dispatcher = EventDispatcher(self.logger)

        # Encoded outbound records
        self._outgoing: 'asyncio.Queue[bytes]' = asyncio.Queue()

        # Special, long-running tasks:
        self._reader_task: Optional['asyncio.Task[None]'] = None
        self._writer_task: Optional['asyncio.Task[None]'] = None

        #: Disconnect task. Runs once, whether the session was closed
        #: voluntarily or by a bottom-half failure.
        self._dc_task: Optional['asyncio.Task[None]'] = None

        # Resolved when negotiation completes.
        self._handshake: Optional['asyncio.Future[None]'] = None

        self._error: Optional[BaseException] = None
        self._execute_id = 0

    def __repr__(self) -> str:
        cls_name = type(self).__name__
        tokens = []
        if self.name is not None:
            tokens.append(f"name={self.name!r}")
        tokens.append(f"state={self.state.name}")
        return f"<{cls_name} {' '.join(tokens)}>"

    @classmethod
    async def connect(cls, transport: Transport,
                      capabilities: Iterable[str] = (), *,
                      strict: bool = True,
                      name: Optional[str] = None) -> 'Session':
        """
        Create a session over ``transport`` and establish it.

        See `establish()` for the errors that may be raised.

        :return: A session in the `SessionState.READY` state.
        """
        session = cls(transport, capabilities, strict=strict, name=name)
        await session.establish()
        return session

    # -------------------------
    # Section: Public interface
    # -------------------------

    @property
    def state(self) -> SessionState:
        """The current `SessionState` of the session."""
        return self._state

    @property
    def greeting(self) -> Optional[Greeting]:
        """The server greeting, once it has been received."""
        return self._negotiator.greeting

    @property
    def capabilities(self) -> Tuple[str, ...]:
        """The capabilities enabled by negotiation."""
        return self._negotiator.enabled

    @property
    def error(self) -> Optional[BaseException]:
        """
        The error that closed this session, if any.

        `None` while the session is open, and after a voluntary `close()`.
        """
        return self._error

    @property
    def strict(self) -> bool:
        """`True` when unusable inbound frames close the session."""
        return self._strict

    async def state_changed(self) -> SessionState:
        """
        Wait for the `state` to change, then return that state.
        """
        await self._state_changed.wait()
        return self.state

    @require(SessionState.AWAITING_GREETING)
    async def establish(self) -> None:
        """
        Read the greeting and negotiate capabilities.

        Returns only once the session is `SessionState.READY`. On any
        failure, the session is closed before the error is raised.

        :raise UnsupportedCapabilityError:
            When a requested capability was not advertised.
        :raise NegotiationRejectedError:
            When the server refused the capabilities command.
        :raise MalformedFrameError: When the greeting is not valid JSON.
        :raise UnrecognizedMessageError:
            When the greeting is not a recognizable QMP message.
        :raise ProtocolSequenceError:
            When the server sent something other than the expected reply.
        :raise TransportError: When the transport failed.
        :raise ConnectionClosedError:
            When the server hung up, or `close()` was called meanwhile.
        """
        if self._handshake is not None:
            raise SessionNotReadyError(
                "Session establishment is already in progress.",
                self.state
            )

        self._handshake = asyncio.get_running_loop().create_future()
        self.logger.debug("Starting reader/writer tasks.")
        self._writer_task = asyncio.create_task(
            self._bh_loop_forever(self._bh_send_message, 'Writer')
        )
        self._reader_task = asyncio.create_task(
            self._bh_loop_forever(self._bh_recv_message, 'Reader')
        )

        try:
            await self._handshake
        except BaseException as err:
            self.logger.debug("Session establishment failed: %s",
                              exception_summary(err))
            await self.close()
            raise

        self.logger.debug("Session established.")

    @require(SessionState.READY)
    async def execute(
            self,
            command: Union[Command, Mapping[str, object]],
    ) -> Response:
        """
        Execute a QMP command and return the server's reply.

        Only the calling task is suspended while waiting; any number of
        commands may be outstanding at once, and each caller receives the
        reply carrying its command's ID.

        :param command:
            A `Command`, or a mapping of the same shape. When it has no
            ``id`` member, a unique one is assigned.

        :raise SessionNotReadyError: When negotiation is not yet complete.
        :raise ConnectionClosedError:
            When the session is closed, or closes before the reply.
        :raise TransportError:
            When the transport failed before the reply arrived.
        :raise ValueError:
            When the command is malformed, cannot be serialized, or uses
            an ID beginning with `ID_PREFIX`.
        :raise TypeError: When the command ID is not a string or integer.
        :raise UnsupportedCapabilityError:
            When executing out-of-band without the 'oob' capability.
        :raise DuplicateIDError:
            When the command ID is already awaiting a reply. This is a
            protocol violation; the session is closed.

        :return: The `SuccessResponse` or `ErrorResponse` to the command.
        """
        if isinstance(command, Command):
            # pylint: disable=protected-access
            raw = command._asdict()
        elif isinstance(command, abc.Mapping):
            raw = dict(command)
        else:
            raise TypeError(
                f"command must be a Command or a mapping, "
                f"not {type(command).__name__}"
            )

        try:
            cmd = Command(raw)
        except (KeyError, TypeError) as err:
            raise ValueError(f"Malformed command: {err.args[0]}") from err

        if cmd.oob and 'oob' not in self.capabilities:
            raise UnsupportedCapabilityError(['oob'], self.capabilities)

        if 'id' in raw:
            self._check_exec_id(raw['id'])
        else:
            raw['id'] = self._get_exec_id()
        exec_id = raw['id']

        # Encode now, so that errors are raised to the caller.
        record = encode(raw)

        try:
            reply = self._table.register(exec_id)
        except DuplicateIDError as err:
            self.logger.error("%s", exception_summary(err))
            self._schedule_disconnect(err)
            raise

        self._outgoing.put_nowait(record)
        return await reply

    async def cmd(self, name: str,
                  arguments: Optional[object] = None,
                  oob: bool = False) -> object:
        """
        Execute a QMP command and return its 'return' value.

        :param name: Command name string.
        :param arguments: Arguments (if any). Must be JSON-serializable.
        :param oob: If `True`, execute "out of band".

        :raise ExecuteError: When the server returns an error response.
        :return:
            The command execution return value from the server. The type
            of object returned depends on the command that was issued,
            though most in QEMU return a `dict`.
        """
        command = Command.create(name, arguments, oob=oob)
        response = await self.execute(command)
        if isinstance(response, ErrorResponse):
            raise ExecuteError(response, command)
        return response.value

    @require(*_OPEN)
    def events(self, names: EventNames = None,
               event_filter: Optional[EventFilter] = None) -> EventListener:
        """
        Subscribe to events.

        :param names:
            One or more names of events to listen for.
            When not provided, listen for ALL events.
        :param event_filter: An optional event filtering function.

        :raise ConnectionClosedError: When the session is closed.
        :return: A new, registered `EventListener`.
        """
        return self._dispatcher.subscribe(names, event_filter)

    @require(*_OPEN)
    def unsubscribe(self, listener: EventListener) -> None:
        """
        Cancel a subscription.

        The listener's pending events are discarded, and it is closed.

        :param listener: A listener returned by `events()`.
        :raise ListenerError: If the listener is not subscribed.
        :raise ConnectionClosedError: When the session is closed.
        """
        self._dispatcher.remove_listener(listener)

    @require(*_OPEN)
    def listen(self, *listeners: EventListener) -> ContextManager[None]:
        r"""
        Context manager: Temporarily listen with one or more listeners.

        See `EventDispatcher.listen()`.

        :param \*listeners: One or more EventListeners to activate.
        :raise ConnectionClosedError: When the session is closed.
        """
        return self._dispatcher.listen(*listeners)

    @require(*_OPEN)
    def listener(
        self,
        names: EventNames = None,
        event_filter: Optional[EventFilter] = None
    ) -> ContextManager[EventListener]:
        """
        Context manager: Temporarily listen with a new `EventListener`.

        See `EventDispatcher.listener()`.

        :raise ConnectionClosedError: When the session is closed.
        """
        return self._dispatcher.listener(names, event_filter)

    async def close(self) -> None:
        """
        Close the session; idempotent.

        Pending commands fail with `ConnectionClosedError`, subscriptions
        end, the bottom-half tasks stop, and the transport is closed.
        Errors from the bottom half are not raised here; see `error`.
        """
        self._schedule_disconnect()
        await self.wait_closed()

    async def wait_closed(self) -> None:
        """
        Wait until the session has been fully closed.

        This does not initiate closing the session.
        """
        await self._closed.wait()

    # --------------------------
    # Section: Session internals
    # --------------------------

    def _check_exec_id(self, exec_id: object) -> None:
        if isinstance(exec_id, bool) or not isinstance(exec_id, (str, int)):
            raise TypeError(
                "Command ID must be a string or an integer, "
                f"not {type(exec_id).__name__}"
            )
        if isinstance(exec_id, str) and exec_id.startswith(self.ID_PREFIX):
            raise ValueError(
                f"Command ID {exec_id!r} uses the reserved prefix "
                f"'{self.ID_PREFIX}'"
            )

    def _get_exec_id(self) -> ExecIDT:
        exec_id = f"{self.ID_PREFIX}{self._execute_id:05d}"
        self._execute_id += 1
        return exec_id

    def _set_state(self, state: SessionState) -> None:
        """
        Change the `SessionState` of the session.

        Signals the `state_changed` event.
        """
        if state == self._state:
            return

        self.logger.debug("Transitioning from '%s' to '%s'.",
                          str(self._state), str(state))
        self._state = state
        self._state_changed.set()
        self._state_changed.clear()

    def _schedule_disconnect(self,
                             error: Optional[BaseException] = None) -> None:
        """
        Initiate closing the session; idempotent.

        This method is used both in the upper-half as a direct
        consequence of `close()`, and in the bottom-half in the case of
        unhandled exceptions in the reader/writer tasks.

        Everything that callers can observe happens synchronously here:
        the state becomes CLOSED, pending commands are failed, and event
        subscriptions end. Stopping the tasks and closing the transport
        happen afterwards in the disconnect task.

        :param error: The error that forced the session closed, if any.
        """
        if self._state == SessionState.CLOSED:
            return

        self._error = error
        self._set_state(SessionState.CLOSED)

        reason: QMPError
        if error is None:
            reason = ConnectionClosedError("Session closed")
        elif isinstance(error, (TransportError, ConnectionClosedError)):
            reason = error
        else:
            reason = ConnectionClosedError("Session closed by error", error)

        count = self._table.cancel_all(reason)
        if count:
            self.logger.debug("Cancelled %d pending command(s).", count)
        self._dispatcher.close()

        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(error or reason)

        self.logger.debug("Scheduling disconnect.")
        self._dc_task = asyncio.create_task(self._bh_disconnect())

    # ----------------------------
    # Section: Bottom Half methods
    # ----------------------------

    async def _bh_disconnect(self) -> None:
        """
        Stop the reader/writer tasks and close the transport.

        It is designed to be called from its task context,
        `Session._dc_task`. By running in its own task, it is free to
        wait on the reader or writer tasks, which may be the very tasks
        that requested the disconnect.
        """
        assert self._state == SessionState.CLOSED

        try:
            writer_ok = (self._writer_task is not None
                         and not self._writer_task.done())
            if self._error is None and writer_ok:
                # Push out whatever has already been written.
                try:
                    await self._transport.drain()
                except Exception as err:  # pylint: disable=broad-except
                    self.logger.debug("Failed to flush the transport: %s",
                                      exception_summary(err))

            tasks = tuple(filter(None, (self._writer_task,
                                        self._reader_task)))
            for task in tasks:
                if not task.done():
                    task.cancel()
            if tasks:
                self.logger.debug("Waiting for tasks to complete ...")
                await asyncio.wait(tasks)

            await self._bh_close_transport()
            self.logger.debug("Disconnected.")
        finally:
            self._closed.set()

    async def _bh_close_transport(self) -> None:
        self.logger.debug("Closing transport.")
        try:
            self._transport.close()
            await self._transport.wait_closed()
        except Exception:  # pylint: disable=broad-except
            # The session is already closed; nobody is left to tell.
            self.logger.debug(
                "Discarding Exception from closing the transport:\n%s\n",
                pretty_traceback(),
            )
        finally:
            self.logger.debug("Transport closed.")

    async def _bh_loop_forever(self, async_fn: _TaskFN, name: str) -> None:
        """
        Run one of the bottom-half methods in a loop forever.

        If the bottom half ever raises any exception, close the session
        with that exception as the cause.

        :param async_fn: The bottom-half method to run in a loop.
        :param name: The name of this task, used for logging.
        """
        try:
            while True:
                await async_fn()
        except asyncio.CancelledError:
            # We have been cancelled by _bh_disconnect, exit gracefully.
            self.logger.debug("Task.%s: cancelled.", name)
            return
        except BaseException as err:
            self.logger.log(
                logging.INFO if isinstance(err, ConnectionClosedError)
                else logging.ERROR,
                "Task.%s: %s",
                name, exception_summary(err)
            )
            self.logger.debug("Task.%s: failure:\n%s\n",
                              name, pretty_traceback())
            self._schedule_disconnect(err)
            if not isinstance(err, Exception):
                raise
        finally:
            self.logger.debug("Task.%s: exiting.", name)

    async def _bh_send_message(self) -> None:
        """
        Wait for an outgoing message, then send it.

        Designed to be run in `_bh_loop_forever()`.
        """
        record = await self._outgoing.get()
        try:
            await self._send(record)
        finally:
            self._outgoing.task_done()

    async def _bh_recv_message(self) -> None:
        """
        Decode inbound records, and route each message with `_on_message`.

        Returns early after skipping a malformed record; the next call
        resumes with the following one. Designed to be run in
        `_bh_loop_forever()`.

        :raise ConnectionClosedError: When the server hung up.
        :raise TransportError: For transport errors.
        :raise MalformedFrameError:
            When a record is not JSON, in strict mode or before the
            greeting.
        :raise UnrecognizedMessageError:
            When a record is not a QMP message, in strict mode or before
            the greeting.
        """
        try:
            async with aclosing(decode_stream(self._transport)) as stream:
                async for value in stream:
                    if self.logger.isEnabledFor(logging.DEBUG):
                        self.logger.debug("<-- %s", serialize(value).decode())

                    try:
                        msg = classify(value)
                    except UnrecognizedMessageError as err:
                        if not self._tolerate(err):
                            raise
                        continue

                    if self._state != SessionState.CLOSED:
                        self._on_message(msg)
        except MalformedFrameError as err:
            if not self._tolerate(err):
                raise
            return

        raise ConnectionClosedError("Server closed the connection")

    def _tolerate(self, err: ProtocolError) -> bool:
        """
        Log and skip an unusable frame, if the session allows it.

        :return: `False` when ``err`` must close the session instead.
        """
        if self._strict or self._state == SessionState.AWAITING_GREETING:
            return False
        self.logger.warning("Discarding unusable frame: %s", str(err))
        return True

    async def _send(self, record: bytes) -> None:
        """
        Write one encoded record to the transport, and flush it.

        :raise TransportError: For transport errors.
        """
        self.logger.debug("--> %s", record.decode().rstrip('\n'))
        try:
            self._transport.write(record)
            await self._transport.drain()
        except OSError as err:
            raise TransportError("Failed to write to transport", err) from err

    def _on_message(self, msg: ServerMessage) -> None:
        """
        Route one inbound message.

        Events go to the event dispatcher in every state. Until the
        session is ready, everything else belongs to negotiation;
        afterwards, replies are delivered to the waiting caller.

        :raise ProtocolSequenceError: For a greeting after negotiation.
        :raise UnknownIDError: For a reply nobody is waiting for.
        """
        if isinstance(msg, Event):
            self._dispatcher.dispatch(msg)
            return

        if self._state != SessionState.READY:
            reply = self._negotiator.feed(msg)
            if reply is not None:
                self._set_state(SessionState.NEGOTIATING)
                self._outgoing.put_nowait(encode(reply))
            elif self._negotiator.state == NegotiationState.DONE:
                self._set_state(SessionState.READY)
                assert self._handshake is not None
                self._handshake.set_result(None)
            return

        if isinstance(msg, Greeting):
            raise ProtocolSequenceError(
                "Unexpected greeting after negotiation", msg
            )

        self._table.resolve(msg.id, msg)


async def connect(transport: Transport,
                  capabilities: Iterable[str] = (), *,
                  strict: bool = True,
                  name: Optional[str] = None) -> Session:
    """
    Establish a QMP session over an already connected transport.

    See `Session.establish()` for the errors that may be raised.

    :param transport: The channel to the QMP server.
    :param capabilities: QMP capabilities to enable during negotiation.
    :param strict: See `Session`.
    :param name: See `Session`.

    :return: A session in the `SessionState.READY` state.
    """
    return await Session.connect(transport, capabilities,
                                 strict=strict, name=name)


async def open_session(address: Union[SocketAddrT, socket.socket],
                       capabilities: Iterable[str] = (), *,
                       strict: bool = True,
                       name: Optional[str] = None,
                       ssl: Optional[SSLContext] = None,
                       limit: int = DEFAULT_LIMIT) -> Session:
    """
    Connect to a QMP server and establish a session.

    :param address:
        Address to connect to; UNIX socket path, TCP address/port, or an
        already connected `socket.socket`.
    :param capabilities: QMP capabilities to enable during negotiation.
    :param strict: See `Session`.
    :param name: See `Session`.
    :param ssl: SSL context to use, if any.
    :param limit: Maximum length of a single inbound record.

    :raise TransportError: When the connection cannot be established.
    :return: A session in the `SessionState.READY` state.
    """
    transport = await open_connection(address, ssl=ssl, limit=limit)
    return await connect(transport, capabilities, strict=strict, name=name)
