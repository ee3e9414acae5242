"""
QMP Command Correlation

The `CorrelationTable` pairs each outstanding command with the caller
awaiting its reply. Every entry is keyed by the command's ``id`` member
and holds an `asyncio.Future` that is resolved with the reply.

The table is closed by `CorrelationTable.cancel_all()`, which fails every
outstanding entry at once; from then on, no entries may be registered.
"""

import asyncio
import logging
from typing import Dict, Hashable, Optional

from .error import ConnectionClosedError, ProtocolError, QMPError
from .models import ErrorResponse, Response


class CorrelationError(ProtocolError):
    """
    Abstract error class for replies that cannot be paired with a command.

    :param error_message: Human-readable string describing the error.
    :param exec_id: The offending correlation identifier.
    """
    def __init__(self, error_message: str, exec_id: object):
        super().__init__(error_message, exec_id)
        #: The offending correlation identifier.
        self.exec_id: object = exec_id


class DuplicateIDError(CorrelationError):
    """
    A command was issued with an ID that is already awaiting a reply.

    :param error_message: Human-readable string describing the error.
    :param exec_id: The duplicated correlation identifier.
    """


class UnknownIDError(CorrelationError):
    """
    The server replied with an ID that matches no outstanding command.

    :param error_message: Human-readable string describing the error.
    :param exec_id: The unmatched correlation identifier.
    :param response: The reply that could not be delivered.
    """
    def __init__(self, error_message: str, exec_id: object,
                 response: Response):
        super().__init__(error_message, exec_id)
        #: The reply that could not be delivered.
        self.response: Response = response

    def __str__(self) -> str:
        return "\n".join([
            super().__str__(),
            f"  Message was: {str(self.response.message)}\n",
        ])


def _key(exec_id: object) -> Optional[Hashable]:
    # 1 and "1" are distinct ids on the wire, and True is not an id at all.
    if isinstance(exec_id, bool) or not isinstance(exec_id, (str, int)):
        return None
    return (type(exec_id), exec_id)


class CorrelationTable:
    """
    Outstanding commands, keyed by correlation identifier.

    :param logger: Logger to use for discarded replies.
    """
    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._pending: Dict[Hashable, 'asyncio.Future[Response]'] = {}
        self._closed = False
        self.logger = logger or logging.getLogger(__name__)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, exec_id: object) -> bool:
        key = _key(exec_id)
        return key is not None and key in self._pending

    @property
    def closed(self) -> bool:
        """`True` once `cancel_all()` has run."""
        return self._closed

    def register(self, exec_id: object) -> 'asyncio.Future[Response]':
        """
        Register a new outstanding command.

        Must be called from within a running event loop.

        :param exec_id: The command's correlation identifier.

        :raise ConnectionClosedError: If the table has been closed.
        :raise TypeError: If the ID is not a string or an integer.
        :raise DuplicateIDError: If the ID is already outstanding.
        :return: A future that will be resolved with the command's reply.
        """
        if self._closed:
            raise ConnectionClosedError("Session is closed")

        key = _key(exec_id)
        if key is None:
            raise TypeError(
                f"Command ID must be a string or an integer, not {exec_id!r}"
            )
        if key in self._pending:
            raise DuplicateIDError(
                f"Command ID {exec_id!r} is already awaiting a reply",
                exec_id
            )

        future: 'asyncio.Future[Response]'
        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        return future

    def resolve(self, exec_id: object, response: Response) -> None:
        """
        Deliver a reply to the command awaiting it, and remove its entry.

        A reply for a command whose caller has since given up waiting is
        discarded.

        :param exec_id: The reply's correlation identifier.
        :param response: The reply itself.

        :raise UnknownIDError: If no command is awaiting this ID.
        """
        key = _key(exec_id)
        future = None if key is None else self._pending.pop(key, None)

        if future is None:
            if exec_id is None and isinstance(response, ErrorResponse):
                # QMP replies this way when it could not parse a command.
                raise UnknownIDError(
                    "Server sent an error response without an ID, "
                    "but there are no ID-less executions pending. "
                    "Assuming this is a server parser failure.",
                    exec_id,
                    response
                )
            raise UnknownIDError(
                f"Server replied with unknown ID {exec_id!r}",
                exec_id,
                response
            )

        if future.done():
            self.logger.debug(
                "Discarding reply for abandoned command %r", exec_id
            )
            return

        future.set_result(response)

    def cancel_all(self, reason: QMPError) -> int:
        """
        Close the table and fail every outstanding command.

        :param reason: The exception each waiting caller will receive.
        :return: The number of outstanding commands that were failed.
        """
        self._closed = True

        count = 0
        for future in self._pending.values():
            if not future.done():
                future.set_exception(reason)
                count += 1
        self._pending.clear()

        return count
