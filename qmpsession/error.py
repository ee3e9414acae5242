"""
QMP Error Classes

This package seeks to provide semantic error classes that are intended
to be used directly by clients when they would like to handle particular
semantic failures (e.g. "the session was closed") without needing to
know the enumeration of possible reasons for that failure.

QMPError serves as the ancestor for all exceptions raised by this
package, and is suitable for use in handling semantic errors from this
library. In most cases, individual public methods will attempt to catch
and re-encapsulate various exceptions to provide a semantic
error-handling interface.

.. admonition:: QMP Exception Hierarchy Reference

 |   `Exception`
 |    +-- `QMPError`
 |         +-- `ProtocolError`
 |         |    +-- `MalformedFrameError`
 |         |    +-- `UnrecognizedMessageError`
 |         |    +-- `ProtocolSequenceError`
 |         |    +-- `CorrelationError`
 |         |         +-- `DuplicateIDError`
 |         |         +-- `UnknownIDError`
 |         +-- `UnsupportedCapabilityError`
 |         +-- `NegotiationRejectedError`
 |         +-- `SessionNotReadyError`
 |         +-- `ConnectionClosedError`
 |         +-- `TransportError`
 |         +-- `ExecuteError`
 |         +-- `ListenerError`
 |         +-- `QMPBadPortError`
"""

from typing import Optional

from .util import exception_summary


class QMPError(Exception):
    """Abstract error class for all errors originating from this package."""


class ProtocolError(QMPError):
    """
    Abstract error class for protocol failures.

    Semantically, these errors are generally the fault of either the
    protocol server or as a result of a bug in this library.

    :param error_message: Human-readable string describing the error.
    """
    def __init__(self, error_message: str, *args: object):
        super().__init__(error_message, *args)
        #: Human-readable error message, without any prefix.
        self.error_message: str = error_message

    def __str__(self) -> str:
        return self.error_message


class ProtocolSequenceError(ProtocolError):
    """
    A frame was understood, but is not legal in the current session state.

    e.g. a second Greeting, or a reply arriving before the Greeting.

    :param error_message: Human-readable string describing the error.
    :param msg: The offending message, as received.
    """
    def __init__(self, error_message: str, msg: object):
        super().__init__(error_message, msg)
        #: The message that arrived out of sequence.
        self.msg: object = msg


class ConnectionClosedError(QMPError):
    """
    The session was closed; no reply is (or ever will be) available.

    Raised to every caller with a pending `Session.execute()` when the
    session is torn down, and to any caller that uses the session after
    that point.

    :param error_message: Human-readable string describing the error.
    :param exc: The error that caused the session to close, if any.
    """
    def __init__(self, error_message: str,
                 exc: Optional[BaseException] = None):
        super().__init__(error_message)
        #: Human-readable error string
        self.error_message: str = error_message
        #: The root cause of the closure, if it was not voluntary.
        self.exc: Optional[BaseException] = exc

    def __str__(self) -> str:
        if self.exc is None:
            return self.error_message
        return f"{self.error_message}: {exception_summary(self.exc)}"
