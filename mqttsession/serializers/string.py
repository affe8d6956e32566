"""Serializer for plain text payloads"""

from .base import PayloadSerializerBase


class PayloadSerializerString(PayloadSerializerBase):

    name = "string"
    description = "Any value as its text representation, never parsed"

    def _encode(self, value):
        # Structured values give their Python representation, not JSON.
        return str(value)

    def _decode(self, text):
        return text
