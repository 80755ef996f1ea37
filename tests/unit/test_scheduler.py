from unittest.mock import MagicMock, Mock

import pytest
from apscheduler.triggers.cron import CronTrigger

from sql_poller.domain.models import NumericValue, PollResult
from sql_poller.exceptions import ConfigurationError, QueryExecutionError
from sql_poller.scheduler import JOB_ID, PollScheduler


@pytest.fixture
def executor():
    mock = Mock()
    mock.run_once.return_value = PollResult(rows_emitted=2, last_value=NumericValue(2), committed=True)
    return mock


class TestPollScheduler:
    def test_runs_once_without_schedule(self, executor):
        emit = Mock()
        backend = MagicMock()
        scheduler = PollScheduler(executor, emit, scheduler=backend)

        assert scheduler.start() is True

        executor.run_once.assert_called_once_with(emit)
        backend.add_job.assert_not_called()
        backend.start.assert_not_called()

    def test_single_run_failure_is_reported(self, executor):
        executor.run_once.side_effect = QueryExecutionError("boom")
        scheduler = PollScheduler(executor, Mock(), scheduler=MagicMock())

        assert scheduler.start() is False

    def test_cron_schedule_registers_non_overlapping_job(self, executor):
        backend = MagicMock()
        scheduler = PollScheduler(executor, Mock(), schedule="*/5 * * * *", scheduler=backend)

        scheduler.start()

        args, kwargs = backend.add_job.call_args
        assert args[0] == scheduler.run_cycle
        assert isinstance(args[1], CronTrigger)
        assert kwargs == {"id": JOB_ID, "max_instances": 1, "coalesce": True}
        backend.start.assert_called_once()

    def test_invalid_schedule(self, executor):
        with pytest.raises(ConfigurationError, match="schedule"):
            PollScheduler(executor, Mock(), schedule="not a cron", scheduler=MagicMock())

    def test_run_cycle_swallows_failures(self, executor):
        executor.run_once.side_effect = [RuntimeError("sink down"), executor.run_once.return_value]
        scheduler = PollScheduler(executor, Mock(), schedule="* * * * *", scheduler=MagicMock())

        assert scheduler.run_cycle() is False
        assert scheduler.run_cycle() is True

    def test_stop_waits_for_scheduler_then_shuts_executor(self, executor):
        backend = MagicMock()
        backend.running = True
        scheduler = PollScheduler(executor, Mock(), schedule="* * * * *", scheduler=backend)

        scheduler.stop()

        backend.shutdown.assert_called_once_with(wait=True)
        executor.shutdown.assert_called_once()

    def test_stop_when_not_running(self, executor):
        backend = MagicMock()
        backend.running = False
        scheduler = PollScheduler(executor, Mock(), scheduler=backend)

        scheduler.stop()

        backend.shutdown.assert_not_called()
        executor.shutdown.assert_called_once()

    def test_stop_is_idempotent(self, executor):
        backend = MagicMock()
        backend.running = True
        scheduler = PollScheduler(executor, Mock(), schedule="* * * * *", scheduler=backend)

        scheduler.stop()
        backend.running = False
        scheduler.stop()

        backend.shutdown.assert_called_once_with(wait=True)
        executor.shutdown.assert_called_once()

    def test_request_stop_does_not_wait_or_close(self, executor):
        backend = MagicMock()
        backend.running = True
        scheduler = PollScheduler(executor, Mock(), schedule="* * * * *", scheduler=backend)

        scheduler.request_stop()

        backend.shutdown.assert_called_once_with(wait=False)
        executor.shutdown.assert_not_called()

    def test_request_stop_when_not_running(self, executor):
        backend = MagicMock()
        backend.running = False
        scheduler = PollScheduler(executor, Mock(), scheduler=backend)

        scheduler.request_stop()

        backend.shutdown.assert_not_called()
        executor.shutdown.assert_not_called()
