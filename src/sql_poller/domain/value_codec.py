"""Textual (de)serialization of cursor values.

Numeric cursors are written as plain numbers, instants as ISO-8601 with an
explicit offset and microsecond precision. Files written by YAML-based
trackers (``--- 1000`` / ``--- 2024-01-01 10:00:00.000000000 Z``)
are accepted on read.
"""

from __future__ import annotations

import math
import re
from datetime import UTC, datetime

from sql_poller.domain.models import CursorValue, InstantValue, NumericValue
from sql_poller.exceptions import StateCorruptionError

_YAML_DOC_PREFIX = "---"
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
# Ruby/YAML timestamps carry nanoseconds; Python keeps microseconds.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def encode_value(value: CursorValue) -> str:
    """Serialize a cursor value to its persisted text form."""
    if isinstance(value, NumericValue):
        number = value.value
        if math.isnan(number) or math.isinf(number):
            raise ValueError(f"cannot persist non-finite cursor value {number!r}")
        if float(number).is_integer():
            return str(int(number))
        return repr(float(number))
    if isinstance(value, InstantValue):
        return value.value.isoformat(timespec="microseconds")
    raise TypeError(f"unsupported cursor value: {value!r}")


def decode_value(text: str) -> CursorValue:
    """Parse persisted text back into a cursor value."""
    raw = text.strip()
    if raw.startswith(_YAML_DOC_PREFIX):
        raw = raw[len(_YAML_DOC_PREFIX) :].strip()
    if not raw:
        raise StateCorruptionError("persisted cursor value is empty")

    if _NUMBER_RE.match(raw):
        return NumericValue(float(raw))

    return InstantValue(_parse_instant(raw))


def _parse_instant(raw: str) -> datetime:
    candidate = raw.strip("'\"")
    if candidate.endswith(" Z") or candidate.endswith("Z"):
        candidate = candidate.rstrip("Z").rstrip() + "+00:00"
    candidate = _FRACTION_RE.sub(r"\1", candidate)
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as e:
        raise StateCorruptionError(f"malformed persisted cursor value: {raw!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
