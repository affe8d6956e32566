"""Session exceptions"""


class SessionError(Exception):
    """Session error."""


class SessionClosedError(SessionError):
    """Session has been closed and can not be used anymore."""


class NotConnectedError(SessionError):
    """Operation requires a broker connection but none exists."""


class TransportError(SessionError):
    """Error reported by the MQTT transport (connection refused...)."""


class PayloadSerializerError(SessionError):
    """Payload serializer error."""


class PayloadEncodeError(PayloadSerializerError):
    """Value can not be encoded with the requested serialization mode."""


class PayloadSerializerNotFoundError(PayloadSerializerError):
    """Payload serializer does not exist."""
