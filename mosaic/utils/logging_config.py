import json
import logging
import logging.config
import os
import uuid
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

# LogRecord attributes that are not copied into the JSON document
_RESERVED_ATTRS = frozenset(
    {
        "timestamp",
        "level",
        "message",
        "logger",
        "request_id",
        "exc_info",
        "extra",
        "args",
        "exc_text",
        "stack_info",
        "created",
        "msecs",
        "relativeCreated",
        "levelno",
        "levelname",
        "msg",
        "name",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "processName",
        "process",
        "threadName",
        "thread",
        "taskName",
    }
)


class JSONFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__()

    def _serialize_object(self, obj: Any) -> Any:
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Exception):
            return str(obj)
        if isinstance(obj, (list, dict, str, int, float, bool)) or obj is None:
            return obj
        return str(obj)

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "request_id": getattr(record, "req_id", None) or generate_request_id(),
        }

        if hasattr(record, "extra") and isinstance(record.extra, dict):
            for key, value in record.extra.items():
                log_record[key] = self._serialize_object(value)

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)

        # Anything passed through `extra=` lands on the record itself
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key != "req_id":
                log_record[key] = self._serialize_object(value)

        return json.dumps(log_record, default=self._serialize_object)


def generate_request_id() -> str:
    return str(uuid.uuid4())


def setup_logging(log_dir: str | Path | None = None, level: str | None = None) -> None:
    """Configure logging for the application.

    Args:
        log_dir: Directory for the JSON log file, defaults to $LOG_DIR or ``logs``
        level: Root log level, defaults to $LOG_LEVEL or ``INFO``
    """
    log_path = Path(log_dir or os.getenv("LOG_DIR", "logs"))
    log_path.mkdir(parents=True, exist_ok=True)

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "mosaic.utils.logging_config.JSONFormatter",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json",
                "stream": "ext://sys.stdout",
            },
            "file": {
                "class": "logging.FileHandler",
                "formatter": "json",
                "filename": str(log_path / "app.log"),
                "mode": "a",
            },
        },
        "root": {
            "level": (level or os.getenv("LOG_LEVEL", "INFO")).upper(),
            "handlers": ["console", "file"],
        },
    }

    root = logging.getLogger()
    root.handlers = []

    logging.config.dictConfig(logging_config)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    This will return a logger that inherits settings from the root logger,
    including log level and handlers.
    """
    return logging.getLogger(name)
