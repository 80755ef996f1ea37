"""Gateway: Redis-backed implementation of CursorStore.

Each write is a single ``SET``, which Redis applies atomically, so readers
never observe a partial value.
"""

from __future__ import annotations

from typing import Any

import redis
import structlog

from sql_poller.domain.models import CursorValue
from sql_poller.domain.value_codec import decode_value, encode_value
from sql_poller.exceptions import StateCorruptionError

logger = structlog.get_logger(__name__)


class RedisCursorStore:
    """Keeps the cursor under one Redis key."""

    def __init__(self, client: Any, key: str):
        self._client = client
        self.key = key

    @classmethod
    def from_url(cls, url: str, key: str) -> RedisCursorStore:
        """Create a store with a client built from a ``redis://`` URL."""
        client = redis.Redis.from_url(url, decode_responses=True)
        return cls(client, key)

    def read(self) -> CursorValue | None:
        try:
            raw = self._client.get(self.key)
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise StateCorruptionError(f"persisted cursor under {self.key!r} is not valid UTF-8") from e
        if raw is None:
            return None
        return decode_value(raw)

    def write(self, value: CursorValue) -> None:
        self._client.set(self.key, encode_value(value))

    def clear(self) -> None:
        removed = self._client.delete(self.key)
        if removed:
            logger.info("Cleared persisted cursor value", key=self.key)
