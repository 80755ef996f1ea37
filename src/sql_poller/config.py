"""Configuration for the sql-poller engine.

Settings are read from environment variables (``POLLER_`` prefix) or a
``.env`` file via pydantic-settings. ``PollerSettings.to_poll_configuration``
performs the cross-field checks and file reads and returns the immutable
``PollConfiguration`` the engine is built from.

Example: ``POLLER_STATEMENT="SELECT * FROM t WHERE id > :sql_last_value"``.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from sql_poller.domain.models import ColumnCase, TrackingColumnType, TrackingMode
from sql_poller.exceptions import ConfigurationError
from sql_poller.statement_builder import build_statement_variant

DEFAULT_LAST_RUN_METADATA_PATH = str(Path.home() / ".sql_poller_last_run")


@dataclass(frozen=True)
class ConnectionOptions:
    """Connection parameters and retry policy; fixed for the engine's lifetime."""

    connection_string: str
    driver_class: str = "psycopg2"
    driver_library: tuple[str, ...] = ()
    user: str | None = None
    password: str | None = field(default=None, repr=False)
    fetch_size: int | None = None
    paging_enabled: bool = False
    page_size: int = 100000
    pool_timeout: float = 5.0
    default_timezone: str | None = None
    validate_connection: bool = False
    validation_timeout: float = 3600.0
    retry_attempts: int = 1
    retry_wait: float = 0.5
    driver_options: dict[str, Any] = field(default_factory=dict)

    @property
    def timezone(self) -> ZoneInfo | None:
        if not self.default_timezone:
            return None
        return ZoneInfo(self.default_timezone)


@dataclass(frozen=True)
class PollConfiguration:
    """Immutable per-engine configuration."""

    connection: ConnectionOptions
    statement: str
    parameters: dict[str, Any] = field(default_factory=dict)
    tracking_mode: TrackingMode = TrackingMode.BY_TIME
    tracking_column: str | None = None
    tracking_column_type: TrackingColumnType = TrackingColumnType.NUMERIC
    charset: str | None = None
    columns_charset: dict[str, str] = field(default_factory=dict)
    column_case: ColumnCase = ColumnCase.LOWER
    clean_run: bool = False
    record_last_run: bool = True
    last_run_metadata_path: str = DEFAULT_LAST_RUN_METADATA_PATH
    cursor_store: Literal["file", "redis"] = "file"
    redis_url: str | None = None
    redis_key: str = "sql_poller:last_run"
    use_prepared_statements: bool = False
    prepared_statement_name: str | None = None
    prepared_statement_bind_values: tuple[Any, ...] = ()
    schedule: str | None = None

    @property
    def numeric_tracking(self) -> bool:
        return (
            self.tracking_mode is TrackingMode.BY_COLUMN
            and self.tracking_column_type is TrackingColumnType.NUMERIC
        )


class PollerSettings(BaseSettings):
    """Top-level settings for the sql-poller engine.

    All fields can be overridden via environment variables with the POLLER_ prefix.
    Example: POLLER_PAGE_SIZE=500 overrides page_size.
    """

    model_config = SettingsConfigDict(
        env_prefix="POLLER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Connection
    connection_string: str = Field(description="Driver connection string / DSN")
    driver_class: str = Field(default="psycopg2", description="DB-API driver module to import")
    driver_library: str | None = Field(default=None, description="Comma-separated extra import paths for the driver")
    user: str | None = None
    password: SecretStr | None = None
    password_filepath: str | None = None
    driver_options: dict[str, Any] = Field(default_factory=dict, description="Extra keyword arguments for connect()")
    validate_connection: bool = False
    validation_timeout: float = Field(default=3600, gt=0, description="Seconds between connection validations")
    pool_timeout: float = Field(default=5, ge=0, description="Seconds to wait while establishing a connection")
    connection_retry_attempts: int = Field(default=1, description="Connection attempts per poll; <= 0 means 1")
    connection_retry_attempts_wait_time: float = Field(default=0.5, ge=0, description="Seconds between attempts")
    default_timezone: str | None = Field(default=None, description="Zone for timestamps without an explicit zone")

    # Statement
    statement: str | None = None
    statement_filepath: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    use_prepared_statements: bool = False
    prepared_statement_name: str | None = None
    prepared_statement_bind_values: list[Any] = Field(default_factory=list)
    paging_enabled: bool = False
    page_size: int = Field(default=100000, gt=0)
    fetch_size: int | None = Field(default=None, gt=0)

    # Tracking and state
    tracking_mode: TrackingMode = TrackingMode.BY_TIME
    tracking_column: str | None = None
    tracking_column_type: TrackingColumnType = TrackingColumnType.NUMERIC
    clean_run: bool = False
    record_last_run: bool = True
    last_run_metadata_path: str = DEFAULT_LAST_RUN_METADATA_PATH
    cursor_store: Literal["file", "redis"] = "file"
    redis_url: str | None = None
    redis_key: str = "sql_poller:last_run"

    # Row decoration
    column_case: ColumnCase = ColumnCase.LOWER
    charset: str | None = None
    columns_charset: dict[str, str] = Field(default_factory=dict)

    # Scheduling and logging
    schedule: str | None = Field(default=None, description="Cron expression; run once when unset")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json or console)")

    def to_poll_configuration(self) -> PollConfiguration:
        """Validate cross-field rules and build the engine configuration.

        Raises ConfigurationError; never touches the database.
        """
        if (self.statement is None) == (self.statement_filepath is None):
            raise ConfigurationError(
                "Must set either :statement or :statement_filepath. Only one may be set at a time."
            )
        if self.password is not None and self.password_filepath is not None:
            raise ConfigurationError("Only one of :password, :password_filepath may be set at a time.")
        if self.tracking_mode is TrackingMode.BY_COLUMN and not self.tracking_column:
            raise ConfigurationError("Must set :tracking_column if :tracking_mode is by-column.")
        if self.cursor_store == "redis" and self.record_last_run and not self.redis_url:
            raise ConfigurationError("Must set :redis_url when :cursor_store is redis.")

        statement = self.statement
        if self.statement_filepath is not None:
            statement = _read_text(self.statement_filepath, "statement_filepath")
        assert statement is not None

        password = self.password.get_secret_value() if self.password is not None else None
        if self.password_filepath is not None:
            password = _read_text(self.password_filepath, "password_filepath").strip()

        if self.default_timezone:
            try:
                ZoneInfo(self.default_timezone)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ConfigurationError(f"Unknown default_timezone {self.default_timezone!r}") from e

        for encoding in filter(None, [self.charset, *self.columns_charset.values()]):
            _check_encoding(encoding)

        connection = ConnectionOptions(
            connection_string=self.connection_string,
            driver_class=self.driver_class,
            driver_library=_split_paths(self.driver_library),
            user=self.user,
            password=password,
            fetch_size=self.fetch_size,
            paging_enabled=self.paging_enabled,
            page_size=self.page_size,
            pool_timeout=self.pool_timeout,
            default_timezone=self.default_timezone or None,
            validate_connection=self.validate_connection,
            validation_timeout=self.validation_timeout,
            retry_attempts=self.connection_retry_attempts,
            retry_wait=self.connection_retry_attempts_wait_time,
            driver_options=dict(self.driver_options),
        )
        config = PollConfiguration(
            connection=connection,
            statement=statement,
            parameters=dict(self.parameters),
            tracking_mode=self.tracking_mode,
            tracking_column=self.tracking_column,
            tracking_column_type=self.tracking_column_type,
            charset=self.charset,
            columns_charset=dict(self.columns_charset),
            column_case=self.column_case,
            clean_run=self.clean_run,
            record_last_run=self.record_last_run,
            last_run_metadata_path=self.last_run_metadata_path,
            cursor_store=self.cursor_store,
            redis_url=self.redis_url,
            redis_key=self.redis_key,
            use_prepared_statements=self.use_prepared_statements,
            prepared_statement_name=self.prepared_statement_name,
            prepared_statement_bind_values=tuple(self.prepared_statement_bind_values),
            schedule=self.schedule or None,
        )

        # Statement placeholder rules are part of pre-flight validation.
        build_statement_variant(config)
        return config


def _read_text(path: str, option: str) -> str:
    try:
        return Path(path).expanduser().read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Unable to read :{option} {path!r}: {e}") from e


def _split_paths(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _check_encoding(name: str) -> None:
    try:
        codecs.lookup(name)
    except LookupError as e:
        raise ConfigurationError(f"Unknown character encoding {name!r}") from e
