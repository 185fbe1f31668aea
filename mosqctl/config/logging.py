"""Logging helpers for the mosqctl manager.

Records are emitted as one JSON object per line. Secrets passed as log
extras (user passwords, hashes, bridge and monitor credentials) are
replaced before they reach the sink.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from logging import Handler
from logging.config import dictConfig
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Any

import msgspec

from .const import PASSWORD_REDACTED
from .model import ManagerConfig

SYSLOG_SOCKET = Path("/dev/log")
LOG_STREAM_ENV = "MOSQCTL_LOG_STREAM"

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_LOG_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

_SECRET_LOG_KEYS = frozenset({"password", "password_hash", "remote_password", "monitor_password"})

# The bridge connectivity probe logs every paho packet at DEBUG.
_QUIET_LOGGERS = ("mosqctl.bridges.probe",)


def _serialise_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class StructuredLogFormatter(logging.Formatter):
    """Emit JSON per log line while trimming the shared prefix."""

    PREFIX = "mosqctl."

    def format(self, record: logging.LogRecord) -> str:
        logger_name = record.name
        if logger_name.startswith(self.PREFIX):
            logger_name = logger_name[len(self.PREFIX) :]

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": logger_name,
            "message": record.getMessage(),
        }

        extras = {
            key: PASSWORD_REDACTED if key in _SECRET_LOG_KEYS else _serialise_value(value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_KEYS and not key.startswith("_")
        }
        if extras:
            payload["extra"] = extras

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return msgspec.json.encode(payload).decode("utf-8")


def _build_handler() -> Handler:
    if os.environ.get(LOG_STREAM_ENV) or not SYSLOG_SOCKET.exists():
        return logging.StreamHandler()

    syslog_handler = SysLogHandler(address=str(SYSLOG_SOCKET), facility=SysLogHandler.LOG_DAEMON)
    syslog_handler.ident = "mosqctl "
    return syslog_handler


def configure_logging(config: ManagerConfig) -> None:
    """Configure root logging based on manager settings."""

    level_name = "DEBUG" if config.debug_logging else "INFO"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "()": "mosqctl.config.logging.StructuredLogFormatter",
                }
            },
            "handlers": {
                "mosqctl": {
                    "()": _build_handler,
                    "level": level_name,
                    "formatter": "structured",
                }
            },
            "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
            "root": {
                "level": level_name,
                "handlers": ["mosqctl"],
            },
        }
    )

    logging.getLogger("mosqctl").info("Logging configured at level %s", level_name)
