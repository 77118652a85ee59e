"""Session payload encoding.

Session values are stored as JSON text by default. Callers may plug in
their own encode/decode pair; anything that is not callable is ignored
and the JSON default is used instead.
"""

import json
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Serializer = Callable[[Any], str]
Unserializer = Callable[[str], Any]


class SerializationCodec:
    """Pluggable encode/decode pair for session payloads.

    Decoding never raises: a stored value that cannot be decoded is logged
    and read back as None, so one corrupt session cannot break a request.
    """

    def __init__(self, serialize: Any = None, unserialize: Any = None) -> None:
        """Initialize codec.

        Args:
            serialize: Optional encoder override (used only if callable)
            unserialize: Optional decoder override (used only if callable)
        """
        self._serialize: Serializer = serialize if callable(serialize) else json.dumps
        self._unserialize: Unserializer = unserialize if callable(unserialize) else json.loads

    @property
    def is_default(self) -> bool:
        """Whether both directions use the JSON default."""
        return self._serialize is json.dumps and self._unserialize is json.loads

    def serialize(self, value: Any) -> str:
        """Encode a session value for storage."""
        return self._serialize(value)

    def unserialize(self, data: str | bytes) -> Any:
        """Decode a stored session value.

        Args:
            data: Encoded value as read from the store

        Returns:
            Decoded value, or None if decoding failed
        """
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        try:
            return self._unserialize(data)
        except Exception as e:
            logger.warning(
                "Failed to parse session payload: %s",
                e,
                extra={"operation": "unserialize"},
            )
            return None


__all__ = ["SerializationCodec", "Serializer", "Unserializer"]
