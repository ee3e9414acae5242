"""
QEMU Monitor Protocol (QMP) session library.

This package implements the client side of the QMP session protocol:
reading the server greeting, negotiating capabilities, correlating
command replies with the commands that caused them, and demultiplexing
asynchronous events onto any number of independent subscriptions.

`Session` provides the main functionality of this package, and
`open_session()` the shortest way to get one. All errors raised by this
library derive from `QMPError`, see `qmpsession.error` for additional
detail. See `qmpsession.events` for an overview of event subscriptions.
"""

# Copyright (C) 2020-2022 John Snow for Red Hat, Inc.
#
# Based on earlier work by Luiz Capitulino <lcapitulino@redhat.com>.
#
# This work is licensed under the terms of the GNU LGPL, version 2 or
# later. See the COPYING file in the top-level directory.

import logging

from .codec import MalformedFrameError
from .correlation import DuplicateIDError, UnknownIDError
from .error import (
    ConnectionClosedError,
    ProtocolError,
    ProtocolSequenceError,
    QMPError,
)
from .events import EventListener, ListenerError
from .models import (
    Command,
    ErrorResponse,
    Event,
    Greeting,
    SuccessResponse,
    UnrecognizedMessageError,
    classify,
)
from .negotiate import NegotiationRejectedError, UnsupportedCapabilityError
from .session import (
    ExecuteError,
    Session,
    SessionNotReadyError,
    SessionState,
    connect,
    open_session,
)
from .transport import StreamTransport, Transport, TransportError


# Suppress logging unless an application engages it.
logging.getLogger('qmpsession').addHandler(logging.NullHandler())


# The order of these fields impact the Sphinx documentation order.
__all__ = (
    # Classes, most to least important
    'Session',
    'SessionState',
    'Command',
    'Greeting',
    'Event',
    'SuccessResponse',
    'ErrorResponse',
    'EventListener',
    'Transport',
    'StreamTransport',

    # Functions
    'open_session',
    'connect',
    'classify',

    # Exceptions, most generic to most explicit
    'QMPError',
    'ProtocolError',
    'MalformedFrameError',
    'UnrecognizedMessageError',
    'ProtocolSequenceError',
    'DuplicateIDError',
    'UnknownIDError',
    'UnsupportedCapabilityError',
    'NegotiationRejectedError',
    'SessionNotReadyError',
    'ConnectionClosedError',
    'TransportError',
    'ExecuteError',
    'ListenerError',
)
