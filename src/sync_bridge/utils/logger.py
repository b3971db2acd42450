"""
Logging setup for Sync Bridge.

Provides structured logging with:
- Rich colored console output
- File logging with rotation
- JSON format option
- Context fields attached to every sync event
"""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler


# Global console for rich output
console = Console()

# Package logger
logger = logging.getLogger("sync_bridge")


def setup_logging(
    level: str = "INFO",
    log_file: Path | str | None = None,
    format_style: str = "rich",
    max_file_size_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        format_style: "rich", "json", or "simple"
        max_file_size_mb: Max log file size before rotation
        backup_count: Number of backup files to keep
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    # Clear existing handlers
    logger.handlers.clear()
    logger.setLevel(log_level)

    handler: logging.Handler
    if format_style == "rich":
        handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_time=True,
            show_path=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    elif format_style == "json":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    handler.setLevel(log_level)
    logger.addHandler(handler)

    if log_file:
        file_path = Path(log_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Context fields passed through log_event()
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            log_data.update(context)

        return json.dumps(log_data, default=str)


def get_logger(name: str = "sync_bridge") -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


def format_fields(fields: dict[str, Any]) -> str:
    """Render context fields as ``key=value`` pairs, skipping None."""
    return " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)


def log_event(
    log: logging.Logger,
    level: int,
    message: str,
    /,
    **fields: Any,
) -> None:
    """
    Log a message with structured context.

    The fields are appended to the human-readable message and attached
    to the record as ``context`` for the JSON formatter. The leading
    parameters are positional-only so ``message`` can also be a field.
    """
    rendered = format_fields(fields)
    text = f"{message} [{rendered}]" if rendered else message
    log.log(level, text, extra={"context": fields})
