import json
import logging
import sys

import structlog

SERVICE_NAME = "sql-poller"

# LogRecord attributes that are never copied into the JSON payload.
_STANDARD_ATTRS = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
    }
)


class JsonFormatter(logging.Formatter):
    """
    Render log records as one JSON object per line.

    structlog hands its event dict to the stdlib logger as ``extra``, so every
    non-standard attribute of the record is a structured field.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and key not in log_record:
                log_record[key] = value

        if "event" in log_record:
            log_record["msg"] = log_record.pop("event")

        if record.exc_info and "exception" not in log_record:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record, sort_keys=True, default=str)


def setup_logging(level: str = "INFO", log_format: str = "json") -> None:
    """
    Configure structlog on top of the standard logging library.

    Records go to stderr (stdout is reserved for emitted rows), either as JSON
    lines or through structlog's console renderer.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        structlog.configure(
            processors=[*shared_processors, structlog.stdlib.render_to_log_kwargs],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        handler.setFormatter(JsonFormatter())
    else:
        structlog.configure(
            processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.dev.ConsoleRenderer(colors=False),
                ],
            )
        )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    # APScheduler logs every job run at INFO
    logging.getLogger("apscheduler").setLevel(max(log_level, logging.WARNING))

    structlog.contextvars.bind_contextvars(service=SERVICE_NAME)
