"""APScheduler-based poll scheduler."""

from __future__ import annotations

from datetime import tzinfo
from typing import TYPE_CHECKING, Any

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from sql_poller.exceptions import ConfigurationError

if TYPE_CHECKING:
    from sql_poller.poll_executor import Emit, PollExecutor

logger = structlog.get_logger(__name__)

JOB_ID = "sql_poll"


class PollScheduler:
    """Run poll cycles once, or on a cron schedule with no overlapping runs."""

    def __init__(
        self,
        executor: PollExecutor,
        emit: Emit,
        schedule: str | None = None,
        timezone: tzinfo | None = None,
        scheduler: Any | None = None,
    ) -> None:
        self.executor = executor
        self._emit = emit
        self.schedule = schedule
        self._trigger: CronTrigger | None = None
        if schedule:
            try:
                self._trigger = CronTrigger.from_crontab(schedule, timezone=timezone)
            except ValueError as e:
                raise ConfigurationError(f"Invalid :schedule {schedule!r}: {e}") from e
        self._scheduler = scheduler if scheduler is not None else BlockingScheduler()
        self._stopped = False

    def run_cycle(self) -> bool:
        """Run one poll cycle; failures are logged and reported as False."""
        try:
            result = self.executor.run_once(self._emit)
        except Exception as e:
            logger.error("Scheduled poll failed", error=str(e), error_type=type(e).__name__)
            return False
        logger.debug("Scheduled poll completed", rows=result.rows_emitted)
        return True

    def start(self) -> bool:
        """Poll once when no schedule is set, otherwise block running the schedule.

        Returns whether the single run succeeded; a scheduled run returns True
        once the scheduler has been stopped.
        """
        if self._trigger is None:
            return self.run_cycle()

        self._scheduler.add_job(
            self.run_cycle,
            self._trigger,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Scheduler started", schedule=self.schedule)
        self._scheduler.start()
        return True

    def request_stop(self) -> None:
        """Ask a running schedule to end without waiting; safe from a signal handler."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stop requested")

    def stop(self) -> None:
        """Stop scheduling, wait for a running cycle, then shut the executor down."""
        if self._stopped:
            return
        self._stopped = True
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
            logger.info("Scheduler stopped")
        self.executor.shutdown()
