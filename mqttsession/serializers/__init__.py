"""MQTT payload serializers"""

import enum

from mqttsession.exceptions import PayloadSerializerNotFoundError

from .base import PayloadSerializerBase, is_binary, decode_text  # noqa
from .auto import PayloadSerializerAuto
from .string import PayloadSerializerString
from .json import PayloadSerializerJSON


class SerializationMode(enum.Enum):
    auto = "auto"
    string = "string"
    json = "json"


_PAYLOAD_SERIALIZERS = {
    x.name: x for x in [
        PayloadSerializerAuto,
        PayloadSerializerString,
        PayloadSerializerJSON,
    ]
}


def get_payload_serializer_cls(mode):
    """Get a registered payload serializer class from its mode name.

    :param SerializationMode|str mode: Serialization mode (or its name).
    :returns PayloadSerializerBase: Payload serializer class found.
    :raises PayloadSerializerNotFoundError:
        When payload serializer class does not exist.
    """
    if isinstance(mode, SerializationMode):
        mode = mode.value
    try:
        return _PAYLOAD_SERIALIZERS[mode]
    except KeyError:
        raise PayloadSerializerNotFoundError(f"{mode} serializer not found!")


def encode(value, mode=SerializationMode.auto):
    """Encode a value to a publishable payload.

    :param value: Application value.
    :param SerializationMode|str mode: (optional, default auto)
    :returns str|bytes: Payload.
    """
    return get_payload_serializer_cls(mode)().encode(value)


def decode(payload, mode=SerializationMode.auto):
    """Decode a received payload to an application value.

    :param bytes payload: Raw payload.
    :param SerializationMode|str mode: (optional, default auto)
    :returns: Decoded value.
    """
    return get_payload_serializer_cls(mode)().decode(payload)
