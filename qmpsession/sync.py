"""
Sync QMP Wrapper

`SyncSession` runs a `Session` on a private event loop, for programs
and scripts that do not use asyncio themselves. Its methods mirror the
`Session` methods of the same name, blocking until they complete.

Every event is collected from the moment negotiation begins; use
`SyncSession.get_event()` to wait for the next one, or
`SyncSession.pending_events()` to take whatever has arrived so far.

.. code:: python

   with SyncSession(parse_address('localhost:4444')) as qmp:
       qmp.connect()
       print(qmp.cmd('query-status'))
"""

import asyncio
import socket
from types import TracebackType
from typing import (
    Awaitable,
    Iterable,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
    Union,
)

from .error import QMPError
from .events import EventListener
from .models import Command, Event, Greeting, Response
from .session import Session
from .transport import SocketAddrT, Transport, open_connection
from .util import get_or_create_event_loop


_T = TypeVar('_T')


class QMPBadPortError(QMPError):
    """
    Unable to parse socket address: Port was non-numerical.
    """


def parse_address(address: str) -> SocketAddrT:
    """
    Parse a command-line style QMP address.

    ``host:port`` becomes a TCP address tuple; anything containing a
    slash, or no colon at all, is a UNIX socket path.

    :raise QMPBadPortError: When the port is not a number.
    """
    host, sep, port = address.rpartition(':')
    if not sep or '/' in address:
        return address

    if not port.isdigit():
        raise QMPBadPortError(f"Bad port: '{port}' in '{address}'.")
    return (host, int(port))


class SyncSession:
    """
    Blocking front-end to a `Session`.

    :param address:
        UNIX socket path, ``(host, port)`` tuple, connected
        `socket.socket`, or a ready `Transport`.
    :param capabilities: QMP capabilities to enable during negotiation.
    :param strict: See `Session`.
    :param name: See `Session`.
    :param timeout:
        Seconds to wait for each command's reply; `None` waits forever.
    """
    def __init__(self,
                 address: Union[SocketAddrT, socket.socket, Transport],
                 capabilities: Iterable[str] = (), *,
                 strict: bool = True,
                 name: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.timeout = timeout
        self._address = address
        self._capabilities = tuple(capabilities)
        self._strict = strict
        self._name = name
        self._session: Optional[Session] = None
        self._events: Optional[EventListener] = None
        self._loop = get_or_create_event_loop()

    def __enter__(self) -> 'SyncSession':
        return self

    def __exit__(self,
                 exc_type: Optional[Type[BaseException]],
                 exc_val: Optional[BaseException],
                 exc_tb: Optional[TracebackType]) -> None:
        self.close()

    def _run(self, coro: Awaitable[_T],
             timeout: Optional[float] = None) -> _T:
        return self._loop.run_until_complete(
            asyncio.wait_for(coro, timeout)
        )

    @property
    def session(self) -> Session:
        """
        The underlying `Session`.

        :raise QMPError: Before `connect()` has been called.
        """
        if self._session is None:
            raise QMPError("SyncSession is not connected")
        return self._session

    async def _establish(self) -> Session:
        if isinstance(self._address, Transport):
            transport = self._address
        else:
            transport = await open_connection(self._address)

        self._session = Session(transport, self._capabilities,
                                strict=self._strict, name=self._name)
        self._events = self._session.events()
        await self._session.establish()
        return self._session

    def connect(self) -> Greeting:
        """
        Connect, then negotiate capabilities.

        See `Session.establish()` for the errors that may be raised.

        :raise QMPError: If already connected.
        :return: The server greeting.
        """
        if self._session is not None:
            raise QMPError("SyncSession is already connected")

        session = self._run(self._establish())
        assert session.greeting is not None
        return session.greeting

    def execute(self,
                command: Union[Command, Mapping[str, object]]) -> Response:
        """
        Execute a command; see `Session.execute()`.

        :raise asyncio.TimeoutError: When ``timeout`` elapses first.
        """
        return self._run(self.session.execute(command), self.timeout)

    def cmd(self, name: str, arguments: Optional[object] = None,
            oob: bool = False) -> object:
        """
        Execute a command and return its value; see `Session.cmd()`.

        :raise ExecuteError: When the server returns an error response.
        :raise asyncio.TimeoutError: When ``timeout`` elapses first.
        """
        return self._run(self.session.cmd(name, arguments, oob),
                         self.timeout)

    def get_event(self, timeout: Optional[float] = None) -> Event:
        """
        Wait for the next event.

        :param timeout: Seconds to wait; `None` waits forever.

        :raise asyncio.TimeoutError: When ``timeout`` elapses first.
        :raise ListenerError:
            When the session has closed and every event was taken.
        """
        if self._events is None:
            raise QMPError("SyncSession is not connected")
        return self._run(self._events.get(), timeout)

    def pending_events(self) -> List[Event]:
        """Take every event received so far, without waiting."""
        if self._events is None:
            return []

        # Let the reader route whatever it has already received.
        self._run(asyncio.sleep(0))
        return self._events.clear()

    def close(self) -> None:
        """Close the session, if one was started; idempotent."""
        if self._session is not None:
            self._run(self._session.close())
