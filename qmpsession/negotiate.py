"""
QMP Capabilities Negotiation

Before a QMP server will accept any command, the client must read the
server greeting and then send exactly one ``qmp_capabilities`` command,
which enables zero or more of the capabilities that the greeting
advertised. The server acknowledges with an empty success reply.

`CapabilityNegotiator` implements that exchange as a small state machine
that is fed the messages read from the server. It performs no I/O: it
returns the command to be sent, and the caller sends it.
"""

from enum import Enum
from typing import (
    Dict,
    Iterable,
    Optional,
    Tuple,
)

from .error import ProtocolSequenceError, QMPError
from .models import (
    ErrorResponse,
    Event,
    Greeting,
    Model,
    SuccessResponse,
)


class NegotiationState(Enum):
    """Negotiation progress, as seen by `CapabilityNegotiator`."""
    #: Nothing has been received yet.
    AWAITING_GREETING = 0
    #: The capabilities command has been produced; awaiting its reply.
    AWAITING_ACK = 1
    #: The server accepted the capabilities command.
    DONE = 2
    #: Negotiation cannot proceed any further.
    FAILED = 3


class UnsupportedCapabilityError(QMPError):
    """
    A capability was requested that the server does not support.

    :param unsupported: The requested capabilities that were unavailable.
    :param available: The capabilities the server actually offered.
    """
    def __init__(self, unsupported: Iterable[str], available: Iterable[str]):
        unsupported = tuple(unsupported)
        available = tuple(available)
        super().__init__(unsupported, available)
        #: Requested capabilities the server does not support.
        self.unsupported: Tuple[str, ...] = unsupported
        #: Capabilities the server does support.
        self.available: Tuple[str, ...] = available

    def __str__(self) -> str:
        return (
            f"Unsupported QMP capabilities {list(self.unsupported)}; "
            f"server offers {list(self.available)}"
        )


class NegotiationRejectedError(QMPError):
    """
    The server rejected the ``qmp_capabilities`` command.

    :param error_response: The server's error reply.
    """
    def __init__(self, error_response: ErrorResponse):
        super().__init__(error_response)
        #: The server's error reply.
        self.error_response: ErrorResponse = error_response
        #: The QMP error class.
        self.error_class: str = error_response.error.class_
        #: The server's human-readable description.
        self.desc: str = error_response.error.desc

    def __str__(self) -> str:
        return f"Capabilities negotiation failed: {self.desc}"


class CapabilityNegotiator:
    """
    Drive the greeting and ``qmp_capabilities`` exchange.

    :param requested:
        Capabilities to enable. Order is preserved, duplicates ignored.
    """
    #: Name of the negotiation command.
    COMMAND = 'qmp_capabilities'

    def __init__(self, requested: Iterable[str] = ()):
        #: Capabilities that will be requested.
        self.requested: Tuple[str, ...] = tuple(dict.fromkeys(requested))
        #: The server greeting, once received.
        self.greeting: Optional[Greeting] = None
        #: Capabilities actually enabled, once negotiation is done.
        self.enabled: Tuple[str, ...] = ()

        self._state = NegotiationState.AWAITING_GREETING

    @property
    def state(self) -> NegotiationState:
        """The current negotiation state."""
        return self._state

    def on_greeting(self, greeting: Greeting) -> Dict[str, object]:
        """
        Accept the server greeting and produce the capabilities command.

        :param greeting: The server greeting.

        :raise ProtocolSequenceError: If a greeting was not expected.
        :raise UnsupportedCapabilityError:
            If any requested capability was not advertised. No command is
            produced in that case.
        :return: The ``qmp_capabilities`` command to send, without an ID.
        """
        if self._state != NegotiationState.AWAITING_GREETING:
            raise ProtocolSequenceError(
                f"Unexpected greeting in state {self._state.name}",
                greeting
            )

        available = greeting.capabilities
        unsupported = [cap for cap in self.requested if cap not in available]
        if unsupported:
            self._state = NegotiationState.FAILED
            raise UnsupportedCapabilityError(unsupported, available)

        self.greeting = greeting
        self._state = NegotiationState.AWAITING_ACK
        return {
            'execute': self.COMMAND,
            'arguments': {'enable': list(self.requested)},
        }

    def on_response(self, response: Model) -> None:
        """
        Accept the reply to the capabilities command.

        :param response: A `SuccessResponse` or `ErrorResponse`.

        :raise ProtocolSequenceError:
            If a reply was not expected, or it carries an ID; the
            capabilities command is always sent without one.
        :raise NegotiationRejectedError: If the server refused.
        """
        if self._state != NegotiationState.AWAITING_ACK:
            raise ProtocolSequenceError(
                f"Unexpected reply in state {self._state.name}",
                response
            )

        assert isinstance(response, (SuccessResponse, ErrorResponse))
        if response.id is not None:
            self._state = NegotiationState.FAILED
            raise ProtocolSequenceError(
                f"Reply ID {response.id!r} does not match the "
                "capabilities command",
                response
            )

        if isinstance(response, ErrorResponse):
            self._state = NegotiationState.FAILED
            raise NegotiationRejectedError(response)

        self.enabled = self.requested
        self._state = NegotiationState.DONE

    def feed(self, model: Model) -> Optional[Dict[str, object]]:
        """
        Feed one server message into the negotiation.

        :param model: A classified server message.

        :raise ProtocolSequenceError:
            If the message is not legal at this point of negotiation.
        :raise UnsupportedCapabilityError: See `on_greeting()`.
        :raise NegotiationRejectedError: See `on_response()`.
        :return:
            The command to send in reply, if any. Events are tolerated
            and produce nothing; they belong to the event dispatcher.
        """
        if isinstance(model, Event):
            return None

        if isinstance(model, Greeting):
            return self.on_greeting(model)

        if isinstance(model, (SuccessResponse, ErrorResponse)):
            self.on_response(model)
            return None

        raise ProtocolSequenceError(
            f"Unexpected {type(model).__name__} during negotiation",
            model
        )
