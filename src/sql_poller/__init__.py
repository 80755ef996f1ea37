"""Incremental SQL polling engine."""

from sql_poller.config import ConnectionOptions, PollConfiguration, PollerSettings
from sql_poller.domain.models import InstantValue, NumericValue, PollResult, TrackingMode
from sql_poller.exceptions import (
    ConfigurationError,
    DatabaseConnectionError,
    DriverLoadError,
    PollerError,
    QueryExecutionError,
    StateCorruptionError,
    TrackingColumnMissingError,
)
from sql_poller.poll_executor import PollExecutor

__all__ = [
    "ConfigurationError",
    "ConnectionOptions",
    "DatabaseConnectionError",
    "DriverLoadError",
    "InstantValue",
    "NumericValue",
    "PollConfiguration",
    "PollExecutor",
    "PollResult",
    "PollerError",
    "PollerSettings",
    "QueryExecutionError",
    "StateCorruptionError",
    "TrackingColumnMissingError",
    "TrackingMode",
]
