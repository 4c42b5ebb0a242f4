"""
Structured JSON logging for the sync server.

Each record becomes one JSON line carrying the wire-format timestamp of
the record, its level, logger and message, plus any sync context passed
through ``extra`` (user_id, server_timestamp, entity ids).
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, Any

from .protocol import format_timestamp

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
}


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON formatter for sync server logs.

    Fields:
    - timestamp: when the record was created, as ``2024-01-31T08:15:00.000Z``
    - level, logger, message
    - exception: formatted traceback, when present
    - every context field supplied via ``extra``
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj: dict[str, Any] = {
            "timestamp": format_timestamp(datetime.fromtimestamp(record.created, UTC)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            log_obj[key] = format_timestamp(value) if isinstance(value, datetime) else value

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = None,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """
    Route a logger's output through StructuredJsonFormatter.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: root logger)
        stream: Destination (default: stdout)

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


class SyncLoggerAdapter(logging.LoggerAdapter):
    """
    Attaches sync context (e.g. the caller's user_id) to every record.

    Fields passed in a call's own ``extra`` take precedence over the
    adapter's context.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs
