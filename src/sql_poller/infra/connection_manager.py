"""Database connection management for the poll engine.

Drivers are plain DB-API 2.0 modules (``psycopg2``, ``sqlite3``, ``pymysql``,
...) loaded by name. A poll cycle acquires one fresh connection and releases
(closes) it at the end; acquisition, release and engine shutdown all run
under the same re-entrant lock so a connection is never closed mid-query.
"""

from __future__ import annotations

import importlib
import math
import os
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import TYPE_CHECKING, Any

import structlog

from sql_poller.exceptions import DatabaseConnectionError, DriverLoadError

if TYPE_CHECKING:
    from sql_poller.config import ConnectionOptions

logger = structlog.get_logger(__name__)

# Driver keyword used to bound connection establishment, keyed by top-level module name.
_CONNECT_TIMEOUT_KEYWORDS = {
    "psycopg": "connect_timeout",
    "psycopg2": "connect_timeout",
    "pymysql": "connect_timeout",
    "MySQLdb": "connect_timeout",
    "sqlite3": "timeout",
}
_ARCHIVE_SUFFIXES = (".zip", ".whl", ".egg", ".pyz")
VALIDATION_QUERY = "SELECT 1"


@dataclass
class ConnectionHandle:
    """A live database session owned by the ConnectionManager."""

    connection: Any
    driver: ModuleType
    generation: int

    @property
    def driver_name(self) -> str:
        return self.driver.__name__

    @property
    def paramstyle(self) -> str:
        return getattr(self.driver, "paramstyle", "qmark")

    @property
    def error_class(self) -> type[BaseException]:
        """The driver's DB-API ``Error`` base class."""
        return getattr(self.driver, "Error", Exception)


class ConnectionManager:
    """Opens, validates and closes connections for poll cycles."""

    def __init__(
        self,
        options: ConnectionOptions,
        driver: ModuleType | None = None,
        sleep_fn: Callable[[float], None] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.options = options
        self.lock = threading.RLock()
        self._driver = driver
        self._sleep = sleep_fn or time.sleep
        self._clock = clock or time.monotonic
        self._handle: ConnectionHandle | None = None
        self._generation = 0
        self._last_validated: float | None = None

    @property
    def current(self) -> ConnectionHandle | None:
        return self._handle

    def load_driver(self) -> ModuleType:
        """Load driver library paths and import the driver module, once."""
        if self._driver is not None:
            return self._driver

        for entry in self.options.driver_library:
            self._load_library(entry)

        driver_class = self.options.driver_class
        try:
            module = importlib.import_module(driver_class)
        except ImportError as e:
            raise DriverLoadError(f"unable to load driver {driver_class!r}: {e}") from e

        if not callable(getattr(module, "connect", None)):
            raise DriverLoadError(f"driver {driver_class!r} is not a DB-API module (no connect())")

        logger.info(
            "Loaded database driver",
            driver=driver_class,
            paramstyle=getattr(module, "paramstyle", None),
        )
        self._driver = module
        return module

    def _load_library(self, entry: str) -> None:
        path = Path(entry).expanduser()
        if not path.exists() or not os.access(path, os.R_OK):
            raise DriverLoadError(f"unable to load {entry} from driver_library, file not readable")

        if path.is_file() and path.suffix.lower() not in _ARCHIVE_SUFFIXES:
            logger.warning("Skipping driver library entry that is not an importable archive", path=str(path))
            return

        resolved = str(path.resolve())
        if resolved not in sys.path:
            sys.path.append(resolved)
            logger.info("Added driver library to import path", path=resolved)

    def _connect_kwargs(self, driver: ModuleType) -> dict[str, Any]:
        options = self.options
        kwargs: dict[str, Any] = dict(options.driver_options)
        if options.user is not None:
            kwargs.setdefault("user", options.user)
        if options.password is not None:
            kwargs.setdefault("password", options.password)

        timeout_keyword = _CONNECT_TIMEOUT_KEYWORDS.get(driver.__name__.split(".")[0])
        if timeout_keyword and options.pool_timeout:
            if timeout_keyword == "timeout":
                kwargs.setdefault(timeout_keyword, float(options.pool_timeout))
            else:
                kwargs.setdefault(timeout_keyword, max(1, math.ceil(options.pool_timeout)))
        return kwargs

    def acquire(self) -> ConnectionHandle:
        """Connect with retry and return a fresh handle.

        Raises DriverLoadError if the driver cannot be loaded (never retried) and
        DatabaseConnectionError once every attempt has failed.
        """
        with self.lock:
            driver = self.load_driver()
            kwargs = self._connect_kwargs(driver)
            error_class = getattr(driver, "Error", Exception)
            attempts = max(1, self.options.retry_attempts)
            last_error: BaseException | None = None

            for attempt in range(1, attempts + 1):
                try:
                    conn = driver.connect(self.options.connection_string, **kwargs)
                    self._prepare_session(conn, driver)
                    self._validate(conn)
                except (error_class, OSError) as e:
                    last_error = e
                    if attempt < attempts:
                        logger.error(
                            "Failed to connect to database. Trying again.",
                            attempt=attempt,
                            max_attempts=attempts,
                            error=str(e),
                        )
                        self._sleep(self.options.retry_wait)
                    else:
                        logger.error(
                            f"Failed to connect to database. Tried {attempts} times.",
                            attempt=attempt,
                            max_attempts=attempts,
                            error=str(e),
                        )
                    continue

                self._generation += 1
                self._handle = ConnectionHandle(connection=conn, driver=driver, generation=self._generation)
                logger.debug("Database connected", driver=driver.__name__, generation=self._generation)
                return self._handle

            raise DatabaseConnectionError(f"Failed to connect after {attempts} attempts: {last_error}") from last_error

    def _prepare_session(self, conn: Any, driver: ModuleType) -> None:
        # Read-only polling: keep psycopg sessions out of idle-in-transaction.
        if driver.__name__.startswith("psycopg") and not getattr(conn, "autocommit", True):
            conn.autocommit = True

    def _validate(self, conn: Any) -> None:
        if not self.options.validate_connection:
            return
        now = self._clock()
        if self._last_validated is not None and now - self._last_validated < self.options.validation_timeout:
            return

        cursor = conn.cursor()
        try:
            cursor.execute(VALIDATION_QUERY)
            cursor.fetchone()
        except BaseException:
            self._close_quietly(conn)
            raise
        finally:
            self._close_cursor(cursor)
        self._last_validated = now
        logger.debug("Connection validated")

    def release(self, handle: ConnectionHandle | None) -> None:
        """Close ``handle``; safe to call with None after a failed acquire."""
        with self.lock:
            if handle is None:
                return
            self._close_quietly(handle.connection)
            if self._handle is handle:
                self._handle = None

    def close(self) -> None:
        """Close any open connection, waiting for an in-flight cycle to finish."""
        with self.lock:
            if self._handle is not None:
                logger.info("Closing database connection", generation=self._handle.generation)
                self.release(self._handle)

    def _close_quietly(self, conn: Any) -> None:
        try:
            conn.close()
        except Exception as e:
            logger.warning(f"Error closing connection: {e}")

    @staticmethod
    def _close_cursor(cursor: Any) -> None:
        close = getattr(cursor, "close", None)
        if callable(close):
            close()
