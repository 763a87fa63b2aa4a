"""
Structured JSON logging utilities.

Channel machines log through :class:`ChannelLoggerAdapter` so every record
carries the channel name, which the JSON formatter emits as a field:

    {"timestamp": "...", "level": "DEBUG", "logger": "reducer_sync.machine",
     "channel": "comments", "message": "[comments] settled at ts=42"}
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.NOTSET, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats each record as a single-line JSON object.

    Fields: ``timestamp`` (ISO 8601, UTC, taken from the record), ``level``,
    ``logger``, ``message``, ``exception`` when present, any ``static_fields``
    (e.g. a device ID shared by every record of this process) and every
    field passed through ``extra``.
    """

    def __init__(self, static_fields: dict[str, Any] | None = None):
        super().__init__()
        self.static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            **self.static_fields,
        }
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = str(value)
            log_obj[key] = value

        log_obj["message"] = record.getMessage()
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = None,
    stream: IO[str] | None = None,
    static_fields: dict[str, Any] | None = None,
) -> logging.Logger:
    """
    Send a logger's records to ``stream`` as JSON lines.

    Calling it again replaces the previous handlers rather than adding
    another one.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: root logger)
        stream: Destination (default: stdout)
        static_fields: Fields added to every record

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter(static_fields))
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def get_sync_logger(name: str) -> logging.Logger:
    """Logger named ``reducer_sync.<name>``, e.g. ``get_sync_logger("machine")``."""
    return logging.getLogger(f"reducer_sync.{name}")


class ChannelLoggerAdapter(logging.LoggerAdapter):
    """
    Prefixes messages with ``[channel]`` and stamps the channel into extras.

    Example:
        >>> log = ChannelLoggerAdapter(get_sync_logger("machine"), {"channel": "comments"})
        >>> log.debug("settled")
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return f"[{self.extra.get('channel')}] {msg}", kwargs
