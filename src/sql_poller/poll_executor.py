"""One poll cycle: acquire, bind, execute (optionally paged), emit, commit, release.

The cycle runs under the connection manager's lock, which ``shutdown`` also
takes, so at most one cycle is in flight and a connection is never closed
underneath a running query. The cursor is committed only after every row of
every page has been emitted; any failure leaves it exactly as it was.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from sql_poller.domain.models import CursorValue, PollResult, PollState, Row, TrackingMode
from sql_poller.exceptions import QueryExecutionError, TrackingColumnMissingError
from sql_poller.gateway import build_cursor_store
from sql_poller.infra.connection_manager import ConnectionHandle, ConnectionManager
from sql_poller.row_decorator import RowDecorator
from sql_poller.statement_builder import (
    BoundQuery,
    StatementVariant,
    build_query,
    build_statement_variant,
    count_query,
    paginate,
)
from sql_poller.value_tracker import ValueTracker

if TYPE_CHECKING:
    from types import ModuleType

    from sql_poller.config import PollConfiguration
    from sql_poller.port.cursor_store import CursorStore

logger = structlog.get_logger(__name__)

Emit = Callable[[Row], None]


class CheckedCountLogger:
    """Debug-logs each statement, adding the row count once a count query is known to work.

    The first statement is probed with a ``count(*)`` wrapper; if the database
    rejects it, counting is disabled for the rest of the engine's life.
    """

    def __init__(self, stdlib_logger: logging.Logger | None = None):
        self._stdlib_logger = stdlib_logger or logging.getLogger(__name__)
        self._needs_check = True
        self._count_supported = False

    @property
    def count_supported(self) -> bool:
        return self._count_supported

    def log_statement(self, handle: ConnectionHandle, query: BoundQuery) -> None:
        if not self._stdlib_logger.isEnabledFor(logging.DEBUG):
            return

        count: int | None = None
        if query.pageable and (self._needs_check or self._count_supported):
            count = self._try_count(handle, query)
        self._needs_check = False

        if count is not None:
            logger.debug("Executing query", statement=query.sql, parameters=query.params, count=count)
        else:
            logger.debug("Executing query", statement=query.sql, parameters=query.params)

    def _try_count(self, handle: ConnectionHandle, query: BoundQuery) -> int | None:
        counting = count_query(query)
        cursor = handle.connection.cursor()
        try:
            cursor.execute(counting.sql, counting.params)
            row = cursor.fetchone()
        except handle.error_class:
            logger.info("Disabling count queries as executing the count SQL raised an error")
            self._count_supported = False
            return None
        finally:
            cursor.close()
        self._count_supported = True
        if isinstance(row, Mapping):
            return int(next(iter(row.values())))
        return int(row[0]) if row else 0


class PollExecutor:
    """Orchestrates poll cycles for one engine instance."""

    def __init__(
        self,
        config: PollConfiguration,
        connections: ConnectionManager,
        tracker: ValueTracker,
        variant: StatementVariant,
        decorator: RowDecorator | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.connections = connections
        self.tracker = tracker
        self.variant = variant
        self.decorator = decorator or RowDecorator(
            column_case=config.column_case,
            source_timezone=config.connection.timezone,
            charset=config.charset,
            columns_charset=config.columns_charset,
        )
        self._now = now_fn or (lambda: datetime.now(UTC))
        self._count_logger = CheckedCountLogger()
        self.state = PollState.IDLE
        self.total_cycles = 0
        self._cycle_active = False
        self._shutdown_requested = False

    @classmethod
    def from_config(
        cls,
        config: PollConfiguration,
        store: CursorStore | None = None,
        driver: ModuleType | None = None,
        **kwargs: Any,
    ) -> PollExecutor:
        """Wire tracker, connection manager and statement variant from ``config``.

        Configuration errors surface here, before any connection attempt.
        """
        variant = build_statement_variant(config)
        tracker = ValueTracker.initialize(config, store if store is not None else build_cursor_store(config))
        connections = ConnectionManager(config.connection, driver=driver)
        return cls(config, connections, tracker, variant, **kwargs)

    def _transition(self, state: PollState) -> None:
        logger.debug("Poll state change", previous=self.state.value, current=state.value)
        self.state = state

    def run_once(self, emit: Emit) -> PollResult:
        """Run one poll cycle, calling ``emit`` for every decorated row.

        Raises DriverLoadError, DatabaseConnectionError or QueryExecutionError
        from the driver side; exceptions raised by ``emit`` propagate unchanged.
        ConfigurationError is raised when the statement cannot be bound for the
        driver's paramstyle.
        The cursor is left untouched in every failure case.
        """
        with self.connections.lock:
            self.total_cycles += 1
            log = logger.bind(cycle=self.total_cycles)
            handle: ConnectionHandle | None = None
            self._cycle_active = True
            try:
                self._transition(PollState.ACQUIRING)
                handle = self.connections.acquire()

                poll_start = self._now()
                self._transition(PollState.EXECUTING)
                query = self._bind(handle)
                candidate = self.tracker.next_candidate(poll_start)

                if self.config.connection.paging_enabled:
                    self._transition(PollState.DRAINING)
                    rows, candidate = self._run_paged(handle, query, emit, candidate)
                else:
                    rows, candidate = self._run_single(handle, query, emit, candidate)

                self._transition(PollState.COMMITTING)
                committed = self._commit(candidate)
                log.info(
                    "Poll cycle completed",
                    rows=rows,
                    sql_last_value=repr(self.tracker.value),
                    committed=committed,
                )
                return PollResult(rows_emitted=rows, last_value=self.tracker.value, committed=committed)
            except Exception as e:
                self._transition(PollState.FAILED)
                log.warning("Poll cycle failed, cursor not advanced", error=str(e), error_type=type(e).__name__)
                raise
            finally:
                self.connections.release(handle)
                self._cycle_active = False
                self._transition(PollState.IDLE)
                if self._shutdown_requested:
                    self._close()

    def shutdown(self) -> None:
        """Close the connection, waiting for any in-flight cycle to release it first.

        Called from the thread running the cycle (an ``emit`` callback or a
        signal handler), the close is deferred until that cycle has released
        its connection.
        """
        with self.connections.lock:
            if self._cycle_active:
                self._shutdown_requested = True
                logger.info("Shutdown requested during a poll cycle, closing after it completes")
                return
            self._close()

    def _close(self) -> None:
        self._shutdown_requested = False
        self.connections.close()
        logger.info("Poll executor shut down")

    def _bind(self, handle: ConnectionHandle) -> BoundQuery:
        try:
            return build_query(self.variant, self.tracker.value, handle)
        except handle.error_class as e:
            raise QueryExecutionError(f"Failed to prepare statement: {e}") from e

    def _commit(self, candidate: CursorValue) -> bool:
        if self.tracker.mode is TrackingMode.NONE:
            return False
        self.tracker.commit(candidate)
        return True

    def _execute(self, handle: ConnectionHandle, query: BoundQuery) -> Any:
        try:
            cursor = handle.connection.cursor()
        except handle.error_class as e:
            raise QueryExecutionError(f"Exception when opening a cursor: {e}") from e
        if self.config.connection.fetch_size:
            cursor.arraysize = self.config.connection.fetch_size
        try:
            if query.params is None:
                cursor.execute(query.sql)
            else:
                cursor.execute(query.sql, query.params)
        except handle.error_class as e:
            cursor.close()
            raise QueryExecutionError(f"Exception when executing query: {e}") from e
        return cursor

    def _fetch(self, handle: ConnectionHandle, cursor: Any, size: int | None = None) -> list[Any]:
        try:
            if size is None:
                return list(cursor.fetchall())
            return list(cursor.fetchmany(size))
        except handle.error_class as e:
            raise QueryExecutionError(f"Exception when fetching rows: {e}") from e

    def _run_single(
        self, handle: ConnectionHandle, query: BoundQuery, emit: Emit, candidate: CursorValue
    ) -> tuple[int, CursorValue]:
        self._count_logger.log_statement(handle, query)
        cursor = self._execute(handle, query)
        emitter = _RowEmitter(self.decorator, self.tracker, emit, candidate)
        try:
            columns = self.decorator.column_names(cursor.description or ())
            while True:
                batch = self._fetch(handle, cursor, cursor.arraysize or 1)
                if not batch:
                    break
                for raw in batch:
                    emitter.emit(columns, raw)
        finally:
            cursor.close()
        return emitter.rows, emitter.candidate

    def _run_paged(
        self, handle: ConnectionHandle, query: BoundQuery, emit: Emit, candidate: CursorValue
    ) -> tuple[int, CursorValue]:
        page_size = self.config.connection.page_size
        self._count_logger.log_statement(handle, query)
        emitter = _RowEmitter(self.decorator, self.tracker, emit, candidate)
        offset = 0
        while True:
            page = paginate(query, page_size, offset)
            logger.debug("Fetching page", offset=offset, limit=page_size)
            cursor = self._execute(handle, page)
            try:
                columns = self.decorator.column_names(cursor.description or ())
                rows = self._fetch(handle, cursor)
            finally:
                cursor.close()
            for raw in rows:
                emitter.emit(columns, raw)
            if len(rows) < page_size:
                break
            offset += page_size
        return emitter.rows, emitter.candidate


class _RowEmitter:
    """Decorates and emits rows in order, folding each into the cursor candidate."""

    def __init__(self, decorator: RowDecorator, tracker: ValueTracker, emit: Emit, candidate: CursorValue):
        self.decorator = decorator
        self.tracker = tracker
        self._emit = emit
        self.candidate = candidate
        self.rows = 0
        self._warned_missing = False

    def emit(self, columns: list[str], raw: Any) -> None:
        if isinstance(raw, Mapping):
            row = self.decorator.decorate_mapping(raw)
        else:
            row = self.decorator.decorate(columns, raw)
        self._emit(row)
        self.rows += 1
        try:
            self.candidate = self.tracker.observe_row(row, self.candidate)
        except TrackingColumnMissingError as e:
            if not self._warned_missing:
                logger.warning("tracking_column not found in dataset.", tracking_column=e.column)
                self._warned_missing = True
