"""Structured JSON logging with run_id support."""
from __future__ import annotations

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any

# Context variable for the id of the environment startup in progress
run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "run_id", default=""
)


class JSONFormatter(logging.Formatter):
    """Custom JSON log formatter."""

    def __init__(self, project: str = "unknown") -> None:
        super().__init__()
        self.project = project

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "project": self.project,
            "run_id": run_id_var.get(""),
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = str(record.exc_info[1])
        return json.dumps(log_entry)


def setup_logging(
    project: str, level: str = "INFO", logger_name: str = "src.compose_env"
) -> logging.Logger:
    """Configure structured JSON logging for environment orchestration.

    Args:
        project: Compose project name stamped on every entry.
        level: Log level string (e.g. "INFO", "DEBUG").
        logger_name: Logger to configure; defaults to the package logger.

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter(project=project))
    logger.addHandler(handler)

    return logger
