"""
Environment-aware logging for the API service.

- development: human-readable, colored single-line records
- staging/production: one JSON object per record for log aggregation

``init`` configures the root logger once, so the stdlib loggers used by the
``models`` and ``clients`` packages share the same handler and format.
"""

import json
import logging
import os
import sys
from datetime import datetime

JSON_ENVIRONMENTS = ("production", "prod", "staging")


class ColoredFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
        "ENDC": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        level_color = self.COLORS.get(record.levelname, "")
        end_color = self.COLORS["ENDC"]
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        module_name = record.name if record.name != "__main__" else "main"
        line = (
            f"[{timestamp}] {level_color}{record.levelname:8s}{end_color} "
            f"[{module_name}] {record.getMessage()}"
        )
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JsonFormatter(logging.Formatter):
    def __init__(self, environment: str):
        super().__init__()
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
            "environment": self.environment,
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        # Structured context passed as logger.info(..., extra={"extra": {...}})
        if isinstance(getattr(record, "extra", None), dict):
            log_entry.update(record.extra)
        return json.dumps(log_entry, default=str)


def get_formatter(environment: str) -> logging.Formatter:
    if environment in JSON_ENVIRONMENTS:
        return JsonFormatter(environment)
    return ColoredFormatter()


def init(level: str = "INFO", environment: str | None = None) -> None:
    """Install the service handler on the root logger (idempotent)."""
    environment = (environment or os.getenv("ENVIRONMENT", "development")).lower()
    resolved = getattr(logging, str(level).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(resolved)
    for handler in list(root.handlers):
        if getattr(handler, "_bidcraft", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(get_formatter(environment))
    handler._bidcraft = True
    root.addHandler(handler)

    # uvicorn installs its own handlers unless log_config=None
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers.clear()
        logging.getLogger(name).propagate = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
