"""
QMP Frame Codec

QMP exchanges exactly one JSON value per newline-terminated record. This
module converts between those records and native Python values; it knows
nothing about what the values mean.

Decoding failures raise `MalformedFrameError`. Such a failure is local
to the one record that caused it: the stream itself is still usable, and
it is up to the caller to decide whether that is fatal.
"""

from collections import abc
import json
from json import JSONDecodeError
from typing import AsyncIterator

from .error import ProtocolError
from .transport import Transport, TransportError


#: Record terminator appended to every outgoing frame.
TERMINATOR = b'\n'


class MalformedFrameError(ProtocolError):
    """
    A QMP record was not understood as JSON.

    When this Exception is raised, ``__cause__`` will be set to the
    `json.JSONDecodeError` (or `UnicodeDecodeError`) Exception, which can
    be interrogated for further details.

    :param error_message: Human-readable string describing the error.
    :param raw: The raw `bytes` that prompted the failure.
    """
    def __init__(self, error_message: str, raw: bytes):
        super().__init__(error_message, raw)
        #: The raw `bytes` that were not understood as JSON.
        self.raw: bytes = raw

    def __str__(self) -> str:
        return "\n".join((
            super().__str__(),
            f"  raw bytes were: {str(self.raw)}",
        ))


def serialize(value: object) -> bytes:
    """
    Serialize a JSON value as compact `bytes`, without a terminator.

    Mappings that are not plain `dict` objects are converted first.

    :raise ValueError: When the object cannot be serialized.
    :raise TypeError: When the object cannot be serialized.
    """
    if isinstance(value, abc.Mapping) and not isinstance(value, dict):
        value = dict(value)
    return json.dumps(value, separators=(',', ':')).encode('utf-8')


def deserialize(data: bytes) -> object:
    """
    Deserialize JSON `bytes` into a native Python value.

    :raise MalformedFrameError: If JSON deserialization fails for any reason.
    """
    try:
        return json.loads(data)
    except (JSONDecodeError, UnicodeDecodeError) as err:
        emsg = "Failed to deserialize QMP message."
        raise MalformedFrameError(emsg, data) from err


def encode(value: object) -> bytes:
    """
    Encode a JSON value as one complete, newline-terminated QMP record.

    :raise ValueError: When the object cannot be serialized.
    :raise TypeError: When the object cannot be serialized.
    """
    return serialize(value) + TERMINATOR


def decode(record: bytes) -> object:
    """
    Decode a single QMP record.

    The record may or may not still carry its newline terminator.

    :raise MalformedFrameError: If the record is not valid JSON.
    """
    return deserialize(record)


async def read_record(transport: Transport) -> bytes:
    """
    Read one raw record from a transport.

    :raise EOFError: When the transport has no more records.
    :raise MalformedFrameError:
        When the record exceeded the transport's read limit. It has been
        discarded, so the next record can still be read.
    :raise TransportError: For errors from the underlying transport.
    """
    try:
        return await transport.readline()
    except ValueError as err:
        raise MalformedFrameError(
            f"Record discarded: {err}", b''
        ) from err
    except OSError as err:
        raise TransportError("Failed to read from transport", err) from err


async def decode_stream(transport: Transport) -> AsyncIterator[object]:
    """
    Lazily decode records from a transport, one JSON value per record.

    The iterator ends when the transport reaches end-of-stream. If a
    record is malformed or oversized, `MalformedFrameError` is raised out
    of this iterator, which is then finished; calling `decode_stream()`
    again resumes with the following record.

    :raise MalformedFrameError: If a record is not valid JSON.
    :raise TransportError: For errors from the underlying transport.
    """
    while True:
        try:
            record = await read_record(transport)
        except EOFError:
            return
        yield decode(record)
