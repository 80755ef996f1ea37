"""Per-row normalization: column casing, timestamps and charset repair."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import UTC, date, datetime, time, tzinfo
from decimal import Decimal
from typing import Any

import structlog

from sql_poller.domain.models import ColumnCase, Row

logger = structlog.get_logger(__name__)


class RowDecorator:
    """Turns raw driver rows into records of plain, JSON-friendly values.

    Timestamps without a zone are read in ``source_timezone`` (UTC when unset)
    and returned as UTC-aware datetimes with their microseconds intact. Byte
    values are decoded only for columns covered by a charset rule; every
    other byte value is passed through untouched.
    """

    def __init__(
        self,
        column_case: ColumnCase = ColumnCase.LOWER,
        source_timezone: tzinfo | None = None,
        charset: str | None = None,
        columns_charset: dict[str, str] | None = None,
    ):
        self.column_case = column_case
        self.source_timezone = source_timezone or UTC
        self.charset = charset
        self.columns_charset = dict(columns_charset or {})

    @property
    def encoding_enabled(self) -> bool:
        return self.charset is not None or bool(self.columns_charset)

    def column_names(self, description: Sequence[Sequence[Any]]) -> list[str]:
        """Apply the configured casing to a cursor ``description``."""
        return [self._case(str(column[0])) for column in description]

    def decorate(self, columns: Sequence[str], values: Sequence[Any]) -> Row:
        """Build one record from already-cased column names and raw values."""
        return {name: self.convert(name, value) for name, value in zip(columns, values)}

    def decorate_mapping(self, raw: Mapping[str, Any]) -> Row:
        """Build one record from a driver row that is already a mapping."""
        row: Row = {}
        for name, value in raw.items():
            column = self._case(str(name))
            row[column] = self.convert(column, value)
        return row

    def _case(self, name: str) -> str:
        if self.column_case is ColumnCase.LOWER:
            return name.lower()
        if self.column_case is ColumnCase.UPPER:
            return name.upper()
        return name

    def convert(self, column: str, value: Any) -> Any:
        if value is None or isinstance(value, (bool, int, float, str)):
            return value
        if isinstance(value, datetime):
            return self.normalize_timestamp(value)
        if isinstance(value, date):
            return self.normalize_timestamp(datetime.combine(value, time.min))
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return self._repair_encoding(column, bytes(value))
        return str(value)

    def normalize_timestamp(self, value: datetime) -> datetime:
        """Interpret a naive timestamp in the source zone and convert it to UTC."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=self.source_timezone)
        return value.astimezone(UTC)

    def _repair_encoding(self, column: str, raw: bytes) -> Any:
        encoding = self.columns_charset.get(column, self.charset)
        if encoding is None:
            return raw
        return raw.decode(encoding, errors="replace")
