"""Default serializer: JSON for structured values, plain text otherwise"""

from .base import PayloadSerializerBase


class PayloadSerializerAuto(PayloadSerializerBase):

    name = "auto"
    description = "Structured values as JSON, scalars and text as plain text"

    def _encode(self, value):
        if isinstance(value, str):
            return value
        # JSON renders numbers and booleans as plain text (42, 1.5, true).
        return self._dumps(value)

    def _decode(self, text):
        return self._loads(text)
