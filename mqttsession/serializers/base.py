"""MQTT generic payload serializer"""

import abc
import json

from mqttsession.exceptions import PayloadEncodeError


BINARY_TYPES = (bytes, bytearray, memoryview)


def is_binary(value):
    """Whether a value is a binary payload (bytes, bytearray, memoryview)."""
    return isinstance(value, BINARY_TYPES)


def decode_text(payload):
    """Decode a raw payload as UTF-8 text.

    Invalid UTF-8 sequences are replaced, so decoding never fails.

    :param bytes|str payload: Raw payload (text is returned as is).
    :returns str: Decoded text.
    """
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return bytes(payload).decode("utf-8", errors="replace")


class PayloadSerializerBase(abc.ABC):
    """Converts application values to wire payloads and back.

    Serializers are stateless: same input always gives same output.
    """

    name = None
    description = None

    def encode(self, value):
        """Encode a value to a payload ready to be published.

        :param value: Application value (binary payloads are detected).
        :returns str|bytes: Payload to publish.
        :raises PayloadEncodeError: When value can not be encoded.
        """
        if is_binary(value):
            return self._encode_binary(value)
        return self._encode(value)

    def decode(self, payload):
        """Decode a received payload to an application value.

        :param bytes payload: Raw payload received.
        :returns: Decoded value, never raises on malformed content.
        """
        return self._decode(decode_text(payload))

    def _encode_binary(self, value):
        return bytes(value)

    @abc.abstractmethod
    def _encode(self, value):
        raise NotImplementedError

    @abc.abstractmethod
    def _decode(self, text):
        raise NotImplementedError

    @staticmethod
    def _dumps(value):
        try:
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise PayloadEncodeError(str(exc))

    @staticmethod
    def _loads(text):
        try:
            return json.loads(text)
        except ValueError:
            return text
