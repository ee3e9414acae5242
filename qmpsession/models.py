"""
QMP Data Models

This module provides simplistic data classes that represent the few
structures that the QMP protocol mandates; they are used to verify
incoming data to make sure it is well-formed, and to tell the kinds
of message apart.

QMP never tags a message with its type. A message is recognized purely
by which members are present, so `classify()` checks for them in a
fixed order: ``QMP`` (a `Greeting`), ``event`` (an `Event`), ``error``
(an `ErrorResponse`) and finally ``return`` (a `SuccessResponse`).
"""
# pylint: disable=too-few-public-methods

from collections import abc
import copy
import json
from typing import (
    Any,
    Dict,
    Mapping,
    Optional,
    Tuple,
    Type,
    Union,
)

from .error import ProtocolError


class UnrecognizedMessageError(ProtocolError):
    """
    A QMP frame was valid JSON, but not any known kind of QMP message.

    Raised for values that are not JSON objects, for objects carrying none
    of the identifying members, and for messages whose identifying member
    is present while the rest of them are missing or mistyped.

    :param error_message: Human-readable string describing the error.
    :param value: The deserialized JSON value that wasn't understood.
    """
    def __init__(self, error_message: str, value: object):
        super().__init__(error_message, value)
        #: The JSON value that was not understood.
        self.value: object = value

    def __str__(self) -> str:
        try:
            strval = json.dumps(self.value, indent=2)
        except (TypeError, ValueError):
            strval = repr(self.value)
        return f"{super().__str__()}\n  json value was: {strval}"


#: Correlation identifiers usable by this library.
ExecIDT = Union[str, int]


class Model:
    """
    Abstract data model, representing some QMP object of some kind.

    Two models are equal when they are the same kind of model and
    represent identical wire content.

    :param raw: The raw object to be validated.
    :raise KeyError: If any required fields are absent.
    :raise TypeError: If any required fields have the wrong type.
    """
    def __init__(self, raw: Mapping[str, Any]):
        self._raw = raw

    def _check_key(self, key: str) -> None:
        if key not in self._raw:
            raise KeyError(f"'{self._name}' object requires '{key}' member")

    def _check_value(self, key: str, type_: type, typestr: str) -> None:
        assert key in self._raw
        if not isinstance(self._raw[key], type_):
            raise TypeError(
                f"'{self._name}' member '{key}' must be a {typestr}"
            )

    def _check_member(self, key: str, type_: type, typestr: str) -> None:
        self._check_key(key)
        self._check_value(key, type_, typestr)

    def _check_int(self, key: str) -> int:
        self._check_key(key)
        value = self._raw[key]
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(
                f"'{self._name}' member '{key}' must be an integer"
            )
        return value

    @property
    def _name(self) -> str:
        return type(self).__name__

    def __repr__(self) -> str:
        return f"{self._name}({self._raw!r})"

    def __eq__(self, other: object) -> bool:
        if type(self) is not type(other):
            return NotImplemented
        assert isinstance(other, Model)
        return dict(self._raw) == dict(other._raw)

    @property
    def message(self) -> Dict[str, object]:
        """A copy of this object's wire content, ready to be re-encoded."""
        return self._asdict()

    def _asdict(self) -> Dict[str, object]:
        """This object's wire content, as a garden-variety `dict`."""
        return dict(copy.deepcopy(self._raw))


class VersionTriple(Model):
    """
    A three-part version number, as used by the ``qemu`` version member.

    :param raw: The raw VersionTriple object.
    :raise KeyError: If any required fields are absent.
    :raise TypeError: If any required fields have the wrong type.
    """
    def __init__(self, raw: Mapping[str, Any]):
        super().__init__(raw)
        #: 'major' member
        self.major: int = self._check_int('major')
        #: 'minor' member
        self.minor: int = self._check_int('minor')
        #: 'micro' member
        self.micro: int = self._check_int('micro')

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.micro}"


class VersionInfo(Model):
    """
    Server version information; the same format as 'query-version'.

    By QEMU convention, a micro version of 50 signifies a development
    branch, 90 or greater a release candidate for the next minor
    version, and anything less than 50 a stable release.

    :param raw: The raw VersionInfo object.
    :raise KeyError: If any required fields are absent.
    :raise TypeError: If any required fields have the wrong type.
    """
    def __init__(self, raw: Mapping[str, Any]):
        super().__init__(raw)
        #: 'qemu' member
        self.qemu: VersionTriple
        #: 'package' member; empty for upstream QEMU builds.
        self.package: str

        self._check_member('qemu', abc.Mapping, "JSON object")
        self.qemu = VersionTriple(self._raw['qemu'])

        self._check_member('package', str, "string")
        self.package = self._raw['package']


class QMPGreeting(Model):
    """
    The 'QMP' member of the server greeting.

    :param raw: The raw QMPGreeting object.
    :raise KeyError: If any required fields are absent.
    :raise TypeError: If any required fields have the wrong type.
    """
    def __init__(self, raw: Mapping[str, Any]):
        super().__init__(raw)
        #: 'version' member
        self.version: VersionInfo
        #: 'capabilities' member
        self.capabilities: Tuple[str, ...]

        self._check_member('version', abc.Mapping, "JSON object")
        self.version = VersionInfo(self._raw['version'])

        self._check_member('capabilities', list, "JSON array")
        if not all(isinstance(cap, str) for cap in self._raw['capabilities']):
            raise TypeError(
                f"'{self._name}' member 'capabilities' must be an array "
                "of strings"
            )
        self.capabilities = tuple(self._raw['capabilities'])


class Greeting(Model):
    """
    The server greeting, sent by the server right after connecting.

    :param raw: The raw Greeting object.
    :raise KeyError: If any required fields are absent.
    :raise TypeError: If any required fields have the wrong type.
    """
    def __init__(self, raw: Mapping[str, Any]):
        super().__init__(raw)
        #: 'QMP' member
        self.QMP: QMPGreeting  # pylint: disable=invalid-name

        self._check_member('QMP', abc.Mapping, "JSON object")
        self.QMP = QMPGreeting(self._raw['QMP'])

    @property
    def version(self) -> VersionInfo:
        """Shorthand for ``greeting.QMP.version``."""
        return self.QMP.version

    @property
    def capabilities(self) -> Tuple[str, ...]:
        """Shorthand for ``greeting.QMP.capabilities``."""
        return self.QMP.capabilities


class Timestamp(Model):
    """
    The time at which an event occurred on the server.

    Both members are relative to the Unix epoch. When the server failed
    to read the host time, both are set to -1.

    :param raw: The raw Timestamp object.
    :raise KeyError: If any required fields are absent.
    :raise TypeError: If any required fields have the wrong type.
    """
    def __init__(self, raw: Mapping[str, Any]):
        super().__init__(raw)
        #: 'seconds' member
        self.seconds: int = self._check_int('seconds')
        #: 'microseconds' member
        self.microseconds: int = self._check_int('microseconds')

    @property
    def time(self) -> Optional[float]:
        """Seconds since the epoch, or `None` if the server had no time."""
        if self.seconds == -1 and self.microseconds == -1:
            return None
        return self.seconds + self.microseconds / 1000000


class Event(Model):
    """
    An asynchronous event, sent unilaterally by the server.

    :param raw: The raw Event object.
    :raise KeyError: If any required fields are absent.
    :raise TypeError: If any required fields have the wrong type.
    """
    def __init__(self, raw: Mapping[str, Any]):
        super().__init__(raw)
        #: 'event' member; the event's name.
        self.name: str
        #: 'data' member, if any; defined per-event.
        self.data: Optional[object] = raw.get('data')
        #: 'timestamp' member
        self.timestamp: Timestamp

        self._check_member('event', str, "string")
        self.name = self._raw['event']

        self._check_member('timestamp', abc.Mapping, "JSON object")
        self.timestamp = Timestamp(self._raw['timestamp'])


class Command(Model):
    """
    A command to be executed by the server, in-band or out-of-band.

    :param raw: The raw Command object.
    :raise KeyError: If neither 'execute' nor 'exec-oob' is present.
    :raise TypeError: If any fields have the wrong type.
    """
    def __init__(self, raw: Mapping[str, Any]):
        super().__init__(raw)
        #: The command name.
        self.name: str
        #: `True` for 'exec-oob' commands.
        self.oob: bool = 'exec-oob' in raw
        #: 'arguments' member, if any; passed through as-is.
        self.arguments: Optional[object] = raw.get('arguments')
        #: 'id' member, if any.
        self.id: Optional[object] = raw.get('id')  # pylint: disable=invalid-name

        key = 'exec-oob' if self.oob else 'execute'
        if self.oob and 'execute' in raw:
            raise TypeError(
                f"'{self._name}' cannot have both 'execute' and 'exec-oob'"
            )
        self._check_member(key, str, "string")
        self.name = self._raw[key]

    @classmethod
    def create(cls, name: str,
               arguments: Optional[object] = None,
               exec_id: Optional[ExecIDT] = None,
               oob: bool = False) -> 'Command':
        """
        Create a command to be sent by `Session.execute()` later.

        :param name: QMP command name.
        :param arguments: Arguments (if any). Must be JSON-serializable.
        :param exec_id:
            Correlation identifier. When omitted, the session assigns one.
        :param oob: If `True`, execute "out of band".
        """
        raw: Dict[str, object] = {'exec-oob' if oob else 'execute': name}
        if arguments is not None:
            raw['arguments'] = arguments
        if exec_id is not None:
            raw['id'] = exec_id
        return cls(raw)


class SuccessResponse(Model):
    """
    A successful command reply.

    :param raw: The raw SuccessResponse object.
    :raise KeyError: If any required fields are absent.
    """
    def __init__(self, raw: Mapping[str, Any]):
        super().__init__(raw)
        #: 'return' member; defined per-command, ``{}`` when there is none.
        self.value: object
        #: 'id' member, if any.
        self.id: Optional[object] = raw.get('id')  # pylint: disable=invalid-name

        self._check_key('return')
        self.value = self._raw['return']


class ErrorInfo(Model):
    """
    The 'error' member of a failed command reply.

    :param raw: The raw ErrorInfo object.
    :raise KeyError: If any required fields are absent.
    :raise TypeError: If any required fields have the wrong type.
    """
    def __init__(self, raw: Mapping[str, Any]):
        super().__init__(raw)
        #: 'class' member, with an underscore to avoid conflicts in Python.
        self.class_: str
        #: 'desc' member; human-readable, not meant to be parsed.
        self.desc: str

        self._check_member('class', str, "string")
        self.class_ = self._raw['class']

        self._check_member('desc', str, "string")
        self.desc = self._raw['desc']


class ErrorResponse(Model):
    """
    A failed command reply.

    :param raw: The raw ErrorResponse object.
    :raise KeyError: If any required fields are absent.
    :raise TypeError: If any required fields have the wrong type.
    """
    def __init__(self, raw: Mapping[str, Any]):
        super().__init__(raw)
        #: 'error' member
        self.error: ErrorInfo
        #: 'id' member, if any.
        self.id: Optional[object] = raw.get('id')  # pylint: disable=invalid-name

        self._check_member('error', abc.Mapping, "JSON object")
        self.error = ErrorInfo(self._raw['error'])


#: Any reply to a command.
Response = Union[SuccessResponse, ErrorResponse]

#: Any message the server may send.
ServerMessage = Union[Greeting, Event, ErrorResponse, SuccessResponse]

# Order matters: see the module documentation.
_CLASSIFIERS: Tuple[Tuple[str, Type[Model]], ...] = (
    ('QMP', Greeting),
    ('event', Event),
    ('error', ErrorResponse),
    ('return', SuccessResponse),
)


def classify(value: object) -> ServerMessage:
    """
    Identify a decoded server message and wrap it in its model.

    :param value: A decoded JSON value, usually from `codec.decode()`.

    :raise UnrecognizedMessageError:
        When the value is not a JSON object, carries none of the
        identifying members, or is malformed for the kind it claims to be.
    :return: A `Greeting`, `Event`, `ErrorResponse` or `SuccessResponse`.
    """
    if not isinstance(value, abc.Mapping):
        raise UnrecognizedMessageError(
            "QMP message is not a JSON object.", value
        )

    for key, model in _CLASSIFIERS:
        if key in value:
            try:
                return model(value)  # type: ignore[return-value]
            except (KeyError, TypeError) as err:
                raise UnrecognizedMessageError(
                    f"Malformed {model.__name__}: {err.args[0]}", value
                ) from err

    raise UnrecognizedMessageError(
        "QMP message has none of the members 'QMP', 'event', 'error' "
        "or 'return'.",
        value
    )
