"""Cursor (``sql_last_value``) tracking between poll cycles."""

from __future__ import annotations

from datetime import UTC, date, datetime, time, tzinfo
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog

from sql_poller.domain.models import CursorValue, InstantValue, NumericValue, Row, TrackingMode
from sql_poller.exceptions import StateCorruptionError, TrackingColumnMissingError

if TYPE_CHECKING:
    from sql_poller.config import PollConfiguration
    from sql_poller.port.cursor_store import CursorStore

logger = structlog.get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class ValueTracker:
    """Owns the in-memory cursor and writes it through a CursorStore.

    The tracker never filters rows; the query predicate does that. It only
    decides what the bookmark becomes after a successful cycle.
    """

    def __init__(
        self,
        store: CursorStore,
        value: CursorValue,
        mode: TrackingMode = TrackingMode.BY_TIME,
        tracking_column: str | None = None,
        numeric: bool = False,
        timezone: tzinfo | None = None,
    ):
        self.store = store
        self.mode = mode
        self.tracking_column = tracking_column
        self.numeric = numeric
        self.timezone = timezone
        self._value = value

    @classmethod
    def initialize(cls, config: PollConfiguration, store: CursorStore) -> ValueTracker:
        """Build a tracker whose starting value comes from ``store`` or the default.

        A clean run deletes any stored value first.
        """
        numeric = config.numeric_tracking
        timezone = config.connection.timezone
        default = _default_value(numeric, timezone)

        if config.clean_run:
            store.clear()
            value: CursorValue = default
            logger.info("Clean run requested, starting from default cursor", value=repr(value))
        else:
            stored = store.read()
            if stored is None:
                value = default
            else:
                value = _check_variant(stored, numeric, timezone)
                logger.info("Resuming from persisted cursor", value=repr(value))

        return cls(
            store,
            value,
            mode=config.tracking_mode,
            tracking_column=config.tracking_column,
            numeric=numeric,
            timezone=timezone,
        )

    @property
    def value(self) -> CursorValue:
        return self._value

    def next_candidate(self, poll_start: datetime) -> CursorValue:
        """Starting candidate for a cycle that began at ``poll_start``.

        Time tracking uses the poll's start, not the time of any row, so rows
        inserted while the poll runs are seen again next time.
        """
        if self.mode is TrackingMode.BY_TIME:
            return InstantValue(self._in_zone(poll_start))
        return self._value

    def observe_row(self, row: Row, candidate: CursorValue) -> CursorValue:
        """Return the candidate after seeing ``row``; the last row wins.

        Raises TrackingColumnMissingError when the column is absent.
        """
        if self.mode is not TrackingMode.BY_COLUMN:
            return candidate
        assert self.tracking_column is not None
        if self.tracking_column not in row:
            raise TrackingColumnMissingError(self.tracking_column)

        raw = row[self.tracking_column]
        converted = self._coerce(raw)
        if converted is None:
            logger.debug("Ignoring unusable tracking column value", column=self.tracking_column, value=repr(raw))
            return candidate
        return converted

    def commit(self, candidate: CursorValue) -> None:
        """Adopt ``candidate`` and persist it."""
        self._value = candidate
        self.store.write(candidate)

    def _coerce(self, raw: Any) -> CursorValue | None:
        if raw is None or isinstance(raw, bool):
            return None
        if self.numeric:
            if isinstance(raw, (int, float, Decimal)):
                return NumericValue(float(raw))
            return None
        if isinstance(raw, datetime):
            return InstantValue(self._in_zone(self._localize(raw)))
        if isinstance(raw, date):
            return InstantValue(self._in_zone(self._localize(datetime.combine(raw, time.min))))
        if isinstance(raw, str):
            try:
                parsed = datetime.fromisoformat(raw)
            except ValueError:
                return None
            return InstantValue(self._in_zone(self._localize(parsed)))
        return None

    def _localize(self, value: datetime) -> datetime:
        # Naive values are read in the configured zone, as RowDecorator does.
        if value.tzinfo is None:
            return value.replace(tzinfo=self.timezone or UTC)
        return value

    def _in_zone(self, value: datetime) -> datetime:
        if self.timezone is None:
            return value.astimezone(UTC)
        return value.astimezone(self.timezone)


def _default_value(numeric: bool, timezone: tzinfo | None) -> CursorValue:
    if numeric:
        return NumericValue(0)
    if timezone is None:
        return InstantValue(EPOCH)
    return InstantValue(EPOCH.astimezone(timezone))


def _check_variant(stored: CursorValue, numeric: bool, timezone: tzinfo | None) -> CursorValue:
    if numeric and not isinstance(stored, NumericValue):
        raise StateCorruptionError(f"persisted cursor {stored!r} is not numeric but numeric tracking is configured")
    if not numeric and not isinstance(stored, InstantValue):
        raise StateCorruptionError(f"persisted cursor {stored!r} is not a timestamp but time tracking is configured")
    if isinstance(stored, InstantValue) and timezone is not None:
        return InstantValue(stored.value.astimezone(timezone))
    return stored
