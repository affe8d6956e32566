"""MQTT client session manager

A session owns a single broker connection and provides:
    - a connection status signal
    - publish, with payload serialization and self-echo tagging
    - subscriptions, with payload decoding and self-echo suppression
"""

__version__ = "0.1.0"
__binname__ = "mqttsession"
__description__ = (
    "MQTT client session manager with self-echo suppression")
__author__ = "mqttsession developers"

LOGNAME = "mqttsession"

from .exceptions import (  # noqa
    SessionError, SessionClosedError, NotConnectedError, TransportError,
    PayloadSerializerError, PayloadEncodeError,
    PayloadSerializerNotFoundError)
from .serializers import SerializationMode, encode, decode  # noqa
from .subscription import Subscription, NO_MESSAGE  # noqa
from .session import Session, ConnectionStatus  # noqa
