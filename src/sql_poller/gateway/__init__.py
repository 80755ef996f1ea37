"""Cursor store gateways and backend selection."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sql_poller.gateway.file_cursor_store import FileCursorStore, NullCursorStore

if TYPE_CHECKING:
    from sql_poller.config import PollConfiguration
    from sql_poller.port.cursor_store import CursorStore


def build_cursor_store(config: PollConfiguration) -> CursorStore:
    """Select the cursor store backend configured for this engine."""
    if not config.record_last_run:
        return NullCursorStore()
    if config.cursor_store == "redis":
        from sql_poller.gateway.redis_cursor_store import RedisCursorStore

        assert config.redis_url is not None
        return RedisCursorStore.from_url(config.redis_url, config.redis_key)
    return FileCursorStore(config.last_run_metadata_path)


__all__ = ["FileCursorStore", "NullCursorStore", "build_cursor_store"]
