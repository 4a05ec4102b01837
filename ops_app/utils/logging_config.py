# ops_app/utils/logging_config.py
"""
Logging setup for the Flask app and the ``ops_app`` package loggers.

Structured fields passed through ``extra={...}`` end up as top-level keys
when ``LOG_FORMAT`` is ``json``.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

PACKAGE_LOGGER_NAME = "ops_app"
LOG_FILE_NAME = "ops_app.log"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_RESERVED_LOG_RECORD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "asctime",
    "taskName",
}

# Handlers installed by setup_logging carry this attribute so re-running
# setup (tests do) replaces them instead of stacking duplicates.
_HANDLER_MARKER = "_ops_app_handler"


class JsonFormatter(logging.Formatter):
    """Render a record and its ``extra`` fields as one JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_FIELDS:
                continue
            if key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def _build_formatter(log_format):
    if str(log_format).lower() == "json":
        return JsonFormatter()
    return logging.Formatter(TEXT_FORMAT)


def _build_handlers(app, level, formatter):
    handlers = []

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler(stream=sys.stdout)
        handlers.append(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE_NAME),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
            encoding="utf-8",
        )
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARKER, True)
    return handlers


def _replace_handlers(logger, handlers):
    for existing in list(logger.handlers):
        if getattr(existing, _HANDLER_MARKER, False):
            logger.removeHandler(existing)
            existing.close()
    for handler in handlers:
        logger.addHandler(handler)


def setup_logging(app):
    """Configure the Flask app logger and the ``ops_app`` logger from app config."""

    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _build_formatter(app.config.get("LOG_FORMAT", "json"))

    handlers = _build_handlers(app, level, formatter)
    _replace_handlers(app.logger, handlers)
    app.logger.setLevel(level)

    package_logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    _replace_handlers(package_logger, handlers)
    package_logger.setLevel(level)
    package_logger.propagate = False

    app.logger.debug(
        "Logging configured",
        extra={
            "log_level": level_name,
            "log_format": app.config.get("LOG_FORMAT", "json"),
            "file_logging": bool(app.config.get("ENABLE_FILE_LOGGING", False)),
        },
    )
    return app.logger
