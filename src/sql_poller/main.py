"""Command-line entry point: poll once or on a schedule, one JSON record per stdout line."""

import json
import signal
import sys
from datetime import date, datetime
from typing import Any, TextIO

import structlog
from pydantic import ValidationError

from sql_poller.config import PollerSettings
from sql_poller.domain.models import Row
from sql_poller.exceptions import PollerError
from sql_poller.logging_config import setup_logging
from sql_poller.poll_executor import Emit, PollExecutor
from sql_poller.scheduler import PollScheduler

logger = structlog.get_logger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def json_lines_emitter(stream: TextIO | None = None) -> Emit:
    """Build an emit callback writing each record as a JSON line to ``stream``."""
    out = stream or sys.stdout

    def emit(row: Row) -> None:
        out.write(json.dumps(row, default=_json_default) + "\n")
        out.flush()

    return emit


def main() -> int:
    """Main entry point for the sql-poller service."""
    try:
        settings = PollerSettings()
    except ValidationError as e:
        setup_logging()
        logger.error("Invalid settings", error=str(e))
        return 1

    setup_logging(settings.log_level, settings.log_format)

    try:
        config = settings.to_poll_configuration()
        executor = PollExecutor.from_config(config)
        executor.connections.load_driver()
        scheduler = PollScheduler(
            executor,
            json_lines_emitter(),
            schedule=config.schedule,
            timezone=config.connection.timezone,
        )
    except PollerError as e:
        logger.error("Failed to start sql-poller", error=str(e), error_type=type(e).__name__)
        return 1

    def _handle_sigterm(signum: int, frame: Any) -> None:
        logger.info("Received SIGTERM, stopping")
        scheduler.request_stop()

    signal.signal(signal.SIGTERM, _handle_sigterm)

    try:
        ok = scheduler.start()
    except KeyboardInterrupt:
        logger.info("Service stopped by user")
        ok = True
    finally:
        scheduler.stop()

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
