"""
Logging configuration
"""

import logging
import logging.config
import json
import os
from datetime import datetime, timezone
from typing import Dict, Any

from marketplace.config import settings


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Fields passed through LoggerAdapter / extra={"context": {...}}
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            log_data.update(context)

        return json.dumps(log_data, default=str)


def build_logging_config() -> Dict[str, Any]:
    """
    Build the dictConfig for the current settings
    """
    use_file = bool(settings.LOG_FILE) and not settings.is_testing
    handlers = ["console", "file"] if use_file else ["console"]

    log_config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            },
            "json": {
                "()": JSONFormatter
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": settings.LOG_LEVEL,
                "formatter": "json" if settings.LOG_FORMAT == "json" else "default",
                "stream": "ext://sys.stdout"
            }
        },
        "loggers": {
            "marketplace": {
                "level": settings.LOG_LEVEL,
                "handlers": handlers,
                "propagate": False
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": ["console"],
                "propagate": False
            },
            "sqlalchemy": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False
            }
        },
        "root": {
            "level": settings.LOG_LEVEL,
            "handlers": ["console"]
        }
    }

    if use_file:
        log_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": settings.LOG_LEVEL,
            "formatter": "json",
            "filename": settings.LOG_FILE,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5
        }

    return log_config


def setup_logging():
    """
    Configure application logging
    """
    log_config = build_logging_config()
    if "file" in log_config["handlers"]:
        log_dir = os.path.dirname(settings.LOG_FILE)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

    logging.config.dictConfig(log_config)


class LoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that attaches payment context (transaction id, provider, event id)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.setdefault("extra", {})
        context = dict(self.extra or {})
        context.update(extra.get("context", {}))
        extra["context"] = context
        return msg, kwargs
