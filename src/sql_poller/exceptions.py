"""Exception hierarchy for the sql-poller engine.

Configuration and driver-load errors abort startup. Connection and
execution errors abort only the current poll cycle and leave the cursor
untouched, so the next cycle is a safe retry.
"""


class PollerError(Exception):
    """Base exception for all sql-poller errors."""


class ConfigurationError(PollerError):
    """Invalid or contradictory configuration, raised before any connection attempt."""


class DriverLoadError(PollerError):
    """The database driver or one of its library paths could not be loaded."""


class DatabaseConnectionError(PollerError):
    """A database connection could not be established after all retry attempts."""


class QueryExecutionError(PollerError):
    """The poll statement or one of its pages failed to execute."""


class TrackingColumnMissingError(PollerError):
    """The configured tracking column is absent from a result row."""

    def __init__(self, column: str):
        super().__init__(f"tracking column {column!r} not found in row")
        self.column = column


class StateCorruptionError(PollerError):
    """The persisted cursor value is malformed."""
