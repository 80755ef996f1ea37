"""Domain models for the sql-poller engine.

Pure value objects with no infrastructure dependencies.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Union


class TrackingMode(str, Enum):
    """How the cursor advances between polls."""

    NONE = "none"
    BY_TIME = "by-time"
    BY_COLUMN = "by-column"


class TrackingColumnType(str, Enum):
    """Type of the tracking column when tracking by column."""

    NUMERIC = "numeric"
    TIMESTAMP = "timestamp"


class ColumnCase(str, Enum):
    """Casing applied to result column names."""

    LOWER = "lower"
    UPPER = "upper"
    VERBATIM = "verbatim"


class PollState(str, Enum):
    """Phases of a single poll cycle."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    EXECUTING = "executing"
    DRAINING = "draining"
    COMMITTING = "committing"
    FAILED = "failed"


@dataclass(frozen=True)
class NumericValue:
    """Cursor value for numeric tracking columns."""

    value: float

    def as_parameter(self) -> int | float:
        """Return the value in the form bound into queries."""
        if float(self.value).is_integer():
            return int(self.value)
        return float(self.value)


@dataclass(frozen=True)
class InstantValue:
    """Cursor value for time-based tracking; always timezone aware."""

    value: datetime

    def __post_init__(self) -> None:
        if self.value.tzinfo is None:
            raise ValueError("InstantValue requires a timezone-aware datetime")

    def as_parameter(self) -> datetime:
        return self.value


CursorValue = Union[NumericValue, InstantValue]

# Decorated result row: column name -> str | int | float | bool | None | datetime
# (or untouched bytes for columns outside every charset rule).
Row = dict[str, Any]


@dataclass(frozen=True)
class PollResult:
    """Outcome of one successful poll cycle."""

    rows_emitted: int
    last_value: CursorValue
    committed: bool
