"""Shared test fixtures for sql-poller."""

import sqlite3
from collections.abc import Callable
from typing import Any

import pytest

from sql_poller.config import ConnectionOptions, PollConfiguration
from sql_poller.domain.models import CursorValue, Row


class MemoryCursorStore:
    """In-memory CursorStore that records every write."""

    def __init__(self, value: CursorValue | None = None):
        self.value = value
        self.writes: list[CursorValue] = []
        self.cleared = 0

    def read(self) -> CursorValue | None:
        return self.value

    def write(self, value: CursorValue) -> None:
        self.value = value
        self.writes.append(value)

    def clear(self) -> None:
        self.value = None
        self.cleared += 1


class RowCollector:
    """Emit callback that keeps every record it receives."""

    def __init__(self) -> None:
        self.rows: list[Row] = []

    def __call__(self, row: Row) -> None:
        self.rows.append(row)


@pytest.fixture
def memory_store() -> MemoryCursorStore:
    return MemoryCursorStore()


@pytest.fixture
def collector() -> RowCollector:
    return RowCollector()


@pytest.fixture
def sqlite_path(tmp_path) -> str:
    """On-disk sqlite database with an ``events`` table (empty)."""
    path = tmp_path / "events.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE events (id INTEGER PRIMARY KEY, name TEXT, updated_at TEXT)")
    conn.commit()
    conn.close()
    return str(path)


@pytest.fixture
def insert_events(sqlite_path) -> Callable[..., None]:
    """Insert ``(id, name, updated_at)`` tuples into the events table."""

    def _insert(*rows: tuple[Any, ...]) -> None:
        conn = sqlite3.connect(sqlite_path)
        conn.executemany("INSERT INTO events (id, name, updated_at) VALUES (?, ?, ?)", rows)
        conn.commit()
        conn.close()

    return _insert


@pytest.fixture
def make_config(sqlite_path, tmp_path) -> Callable[..., PollConfiguration]:
    """Build a PollConfiguration against the sqlite fixture database.

    Keyword arguments prefixed with ``connection__`` go to ConnectionOptions.
    """

    def _make(statement: str = "SELECT * FROM events ORDER BY id", **overrides: Any) -> PollConfiguration:
        connection_overrides = {
            key.removeprefix("connection__"): overrides.pop(key)
            for key in list(overrides)
            if key.startswith("connection__")
        }
        connection = ConnectionOptions(
            **{
                "connection_string": sqlite_path,
                "driver_class": "sqlite3",
                **connection_overrides,
            }
        )
        overrides.setdefault("last_run_metadata_path", str(tmp_path / "last_run"))
        return PollConfiguration(connection=connection, statement=statement, **overrides)

    return _make
