"""Multi-cycle polling through the public API with a file-backed cursor."""

import sqlite3
from datetime import UTC, datetime

import pytest

from sql_poller import NumericValue, PollExecutor, TrackingMode
from sql_poller.config import PollerSettings
from sql_poller.domain.models import ColumnCase
from sql_poller.main import json_lines_emitter

pytestmark = pytest.mark.integration


def test_incremental_sync_with_paging_and_restart(sqlite_path, insert_events, tmp_path, collector):
    settings = PollerSettings(
        connection_string=sqlite_path,
        driver_class="sqlite3",
        statement="SELECT id, name FROM events WHERE id > :sql_last_value AND name != :skip ORDER BY id",
        parameters={"skip": "ignored"},
        tracking_mode="by-column",
        tracking_column="ID",
        paging_enabled=True,
        page_size=7,
        last_run_metadata_path=str(tmp_path / "last_run"),
        column_case="upper",
    )
    config = settings.to_poll_configuration()
    insert_events(*[(i, "ignored" if i % 10 == 0 else f"n{i}", None) for i in range(1, 51)])

    first = PollExecutor.from_config(config).run_once(collector)

    assert first.rows_emitted == 45
    assert first.last_value == NumericValue(49)
    assert config.column_case is ColumnCase.UPPER
    assert set(collector.rows[0]) == {"ID", "NAME"}

    insert_events((51, "late", None))
    second = PollExecutor.from_config(config).run_once(collector)

    assert second.rows_emitted == 1
    assert collector.rows[-1] == {"ID": 51, "NAME": "late"}
    assert (tmp_path / "last_run").read_text().strip() == "51"


def test_rows_with_timestamps_and_blobs_serialize(sqlite_path, make_config, memory_store, tmp_path):
    conn = sqlite3.connect(sqlite_path)
    conn.execute("CREATE TABLE docs (id INTEGER, body BLOB, title BLOB)")
    conn.execute("INSERT INTO docs VALUES (1, ?, ?)", (b"\x00\x01", "café".encode("latin-1")))
    conn.commit()
    conn.close()
    out = tmp_path / "out.jsonl"
    config = make_config(
        "SELECT * FROM docs",
        tracking_mode=TrackingMode.NONE,
        columns_charset={"title": "latin-1"},
    )

    with out.open("w", encoding="utf-8") as stream:
        PollExecutor.from_config(config, store=memory_store).run_once(json_lines_emitter(stream))

    assert out.read_text(encoding="utf-8").strip() == '{"id": 1, "body": "\\u0000\\u0001", "title": "caf\\u00e9"}'


def test_user_parameters_filter_rows_in_time_mode(make_config, memory_store, collector, insert_events):
    insert_events((1, "old", "2023-12-31T23:00:00+00:00"), (2, "new", "2024-01-01T00:30:00+00:00"))
    starts = iter([datetime(2024, 1, 1, 1, 0, tzinfo=UTC)])
    config = make_config("SELECT * FROM events WHERE updated_at > :since ORDER BY id", parameters={"since": "2024"})

    result = PollExecutor.from_config(config, store=memory_store, now_fn=lambda: next(starts)).run_once(collector)

    assert [row["name"] for row in collector.rows] == ["new"]
    assert result.last_value.value == datetime(2024, 1, 1, 1, 0, tzinfo=UTC)
