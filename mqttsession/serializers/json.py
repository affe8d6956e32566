"""Serializer forcing JSON on every payload"""

from .base import PayloadSerializerBase, decode_text


class PayloadSerializerJSON(PayloadSerializerBase):

    name = "json"
    description = "Every value as JSON, binary payloads as JSON strings"

    def _encode_binary(self, value):
        # Double encoding: receiver's JSON parse gives back the original text.
        return self._dumps(decode_text(value))

    def _encode(self, value):
        return self._dumps(value)

    def _decode(self, text):
        return self._loads(text)
