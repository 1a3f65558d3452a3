"""JSON line logging for the gateway process."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TextIO

CONTEXT_FIELDS = (
    "request_id",
    "record_id",
    "user_id",
    "thread_ref",
    "model",
    "provider",
    "agent_name",
    "correlation_id",
    "event_id",
    "streaming",
    "latency_ms",
    "token_in",
    "token_out",
    "status_code",
    "error",
)

# Client libraries that log every upstream request at INFO.
CHATTY_LOGGERS = ("httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    """Render a record as one JSON object, copying only known context fields."""

    def __init__(self, fields: tuple[str, ...] = CONTEXT_FIELDS):
        super().__init__()
        self._fields = fields

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in self._fields:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(log_level: str, stream: TextIO | None = None) -> None:
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter())
    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(log_level.upper())
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(root_logger.level, logging.WARNING))
