"""
Miscellaneous Utilities

Helpers shared by the session engine, its transports and the sync
wrapper: fully flushing a stream, finding an event loop for synchronous
callers, and formatting bottom-half failures for the log.
"""

import asyncio
import textwrap
import traceback
from typing import cast
import warnings


def get_or_create_event_loop() -> asyncio.AbstractEventLoop:
    """
    Return this thread's current event loop, or create and set a new one.

    Only `SyncSession` needs this; asyncio programs use their running loop.
    """
    try:
        with warnings.catch_warnings():
            # Python <= 3.13 warns when no loop is set, but creates one.
            warnings.simplefilter("ignore")
            return asyncio.get_event_loop()
    except RuntimeError:
        # Python 3.14+, or asyncio.run() already cleared the loop.
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        return loop


async def flush(writer: asyncio.StreamWriter) -> None:
    """
    Drain ``writer`` until its buffer is empty.

    `asyncio.StreamWriter.drain` returns as soon as the buffer drops
    below the high-water mark. Both marks are zeroed for the duration of
    the call, then restored.
    """
    transport = cast(asyncio.WriteTransport, writer.transport)

    low, high = transport.get_write_buffer_limits()
    transport.set_write_buffer_limits(0, 0)
    try:
        await writer.drain()
    finally:
        transport.set_write_buffer_limits(high, low)


def exception_summary(exc: BaseException) -> str:
    """
    Describe ``exc`` on one line, as "module.Type: message".

    Builtin exceptions are not qualified by module, and the message part
    is omitted when the exception has none.
    """
    cls = type(exc)
    name = cls.__qualname__
    if cls.__module__ not in ("__main__", "builtins"):
        name = f"{cls.__module__}.{name}"

    message = str(exc)
    return f"{name}: {message}" if message else name


def pretty_traceback(prefix: str = "  | ") -> str:
    """
    Format the exception being handled, with every line behind ``prefix``.

    Used when logging a bottom-half failure at DEBUG, so that the inner
    traceback stands apart from the surrounding log output::

      | Traceback (most recent call last):
      |   File "session.py", line 42, in _bh_recv_message
      |     ...
      | qmpsession.codec.MalformedFrameError: Failed to deserialize ...
    """
    text = traceback.format_exc().rstrip('\n')
    return textwrap.indent(text, prefix, lambda _: True)
