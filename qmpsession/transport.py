"""
QMP Transports

The session engine does not care how bytes reach QEMU. It consumes a
`Transport`: a duplex channel with a line-oriented inbound side and a
byte-oriented outbound side.

`StreamTransport` adapts a pair of asyncio streams to that interface,
and `open_connection()` creates one for a UNIX socket path, a TCP
``(host, port)`` address, or an already-connected `socket.socket`.
"""

import asyncio
import logging
import socket
from ssl import SSLContext
from typing import Optional, Tuple, Union

from .error import QMPError
from .util import exception_summary, flush


InternetAddrT = Tuple[str, int]
UnixAddrT = str
SocketAddrT = Union[UnixAddrT, InternetAddrT]

#: Read buffer limit; large enough to accept query-qmp-schema.
DEFAULT_LIMIT = 256 * 1024


class TransportError(QMPError):
    """
    The underlying transport failed.

    This Exception always wraps a "root cause" exception, usually an
    `OSError`, that can be interrogated for additional information.

    :param error_message: Human-readable string describing the error.
    :param exc: The root-cause exception.
    """
    def __init__(self, error_message: str, exc: BaseException):
        super().__init__(error_message)
        #: Human-readable error string
        self.error_message: str = error_message
        #: Wrapped root cause exception
        self.exc: BaseException = exc

    def __str__(self) -> str:
        cause = str(self.exc)
        if not cause:
            # If there's no error string, use the exception name.
            cause = exception_summary(self.exc)
        return f"{self.error_message}: {cause}"


class Transport:
    """
    Abstract duplex channel carrying newline-delimited QMP records.

    Implementations must provide all of the methods below. Errors are
    reported as `OSError` (or `TransportError`); end-of-stream is
    reported by `readline()` raising `EOFError`.
    """

    async def readline(self) -> bytes:
        """
        Wait for and return the next inbound record.

        The record usually includes its trailing newline. It may lack
        one if end-of-stream was reached after a partial record; the
        next call will then raise `EOFError`.

        :raise EOFError: When there are no more records.
        :raise ValueError:
            When a record exceeds the read limit. That record is
            discarded, and the stream remains usable.
        :raise OSError: For stream-related errors.
        """
        raise NotImplementedError

    def write(self, data: bytes) -> None:
        """
        Queue bytes for transmission.

        :raise OSError: For stream-related errors.
        """
        raise NotImplementedError

    async def drain(self) -> None:
        """
        Wait until all queued bytes have been handed to the peer.

        :raise OSError: For stream-related errors.
        """
        raise NotImplementedError

    def close(self) -> None:
        """Begin closing the channel. Must be safe to call when closed."""
        raise NotImplementedError

    async def wait_closed(self) -> None:
        """Wait for a previous `close()` to complete."""
        raise NotImplementedError


class StreamTransport(Transport):
    """
    `Transport` implementation over an asyncio stream pair.

    :param reader: Incoming `asyncio.StreamReader`.
    :param writer: Outgoing `asyncio.StreamWriter`.
    """
    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer

    def __repr__(self) -> str:
        peer = self._writer.get_extra_info('peername', 'unknown peer')
        return f"<{type(self).__name__} peer={peer!r}>"

    async def readline(self) -> bytes:
        msg_bytes = await self._reader.readline()

        if not msg_bytes:
            if self._reader.at_eof():
                raise EOFError

        return msg_bytes

    def write(self, data: bytes) -> None:
        self._writer.write(data)

    async def drain(self) -> None:
        await flush(self._writer)

    def close(self) -> None:
        # NB: Closing the writer also implicitly closes the reader.
        if not self._writer.is_closing():
            self._writer.close()

    async def wait_closed(self) -> None:
        await self._writer.wait_closed()


async def open_connection(
        address: Union[SocketAddrT, socket.socket],
        ssl: Optional[SSLContext] = None,
        limit: int = DEFAULT_LIMIT,
) -> StreamTransport:
    """
    Acting as the transport client, connect to a QMP server.

    :param address:
        Address to connect to; UNIX socket path, TCP address/port, or an
        already connected `socket.socket`.
    :param ssl: SSL context to use, if any.
    :param limit: Maximum length of a single inbound record.

    :raise TransportError: When the connection cannot be established.
    :return: A `StreamTransport` for the new connection.
    """
    logger = logging.getLogger(__name__)

    if isinstance(address, socket.socket):
        logger.debug("Connecting with existing socket: "
                     "fd=%d, family=%r, type=%r",
                     address.fileno(), address.family, address.type)
        connect = asyncio.open_connection(
            limit=limit,
            ssl=ssl,
            sock=address,
        )
    elif isinstance(address, tuple):
        logger.debug("Connecting to %s ...", address)
        connect = asyncio.open_connection(
            address[0],
            address[1],
            ssl=ssl,
            limit=limit,
        )
    else:
        logger.debug("Connecting to file://%s ...", address)
        connect = asyncio.open_unix_connection(
            path=address,
            ssl=ssl,
            limit=limit,
        )

    try:
        reader, writer = await connect
    except OSError as err:
        raise TransportError("Failed to establish connection", err) from err

    logger.debug("Connected.")
    return StreamTransport(reader, writer)
