"""
Structured logging configuration for the NearMe reminder backend.

Provides JSON-formatted logging with file rotation for production environments
and human-readable console logging for development.

Loggers:
- api: HTTP requests, responses, exception handlers
- services: Task lifecycle, notification actions, retention
- intake: Crossing report filtering, composition and bundling
- scheduler: Notification dispatch, retry and push gateway
- registry: Geofence prioritization and capacity decisions
- queue: Offline event queue replay and bulk sync
- sweeps: Periodic background loops
- db: Database operations, migrations
- websocket: Geofence-specs-changed channels
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Dict, Optional
import json
from datetime import datetime, timezone


LOGGER_NAMES = [
    "api",
    "services",
    "intake",
    "scheduler",
    "registry",
    "queue",
    "sweeps",
    "db",
    "websocket",
]

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs logs as JSON for structured logging.

    Each log record includes:
    - timestamp: ISO 8601 format
    - level: Log level (INFO, ERROR, etc.)
    - logger: Logger name (nearme.intake, nearme.scheduler, ...)
    - message: Log message
    - module: Python module name
    - function: Function name where log was created
    - line: Line number
    - Additional fields: exception info, extra fields
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
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

        # Fields passed via logger.info("msg", extra={...})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable formatter for console output in development.

    Format: [TIMESTAMP] LEVEL - LOGGER - MESSAGE
    Example: [2026-03-02 10:30:45] INFO - nearme.intake - Crossing accepted
    """

    def __init__(self):
        super().__init__(
            fmt="[%(asctime)s] %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )


def _get_log_level() -> int:
    """
    Get log level from environment variable.

    Environment Variables:
        NEARME_LOG_LEVEL: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
                          Defaults to INFO
    """
    level_str = os.environ.get("NEARME_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def _get_log_dir() -> Path:
    """
    Get log directory path from environment variable or use default.

    Environment Variables:
        NEARME_LOG_DIR: Custom log directory path
                        Defaults to ./logs (relative to CWD)
    """
    log_dir = Path(os.environ.get("NEARME_LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _is_production() -> bool:
    """
    Check if running in production environment.

    Environment Variables:
        NEARME_ENV: Environment name (production, development, test)
                    Defaults to development
    """
    return os.environ.get("NEARME_ENV", "development").lower() == "production"


def configure_logging() -> Dict[str, logging.Logger]:
    """
    Configure structured logging for the backend.

    Behavior:
    - Production (NEARME_ENV=production):
      * JSON-formatted logs to files with rotation
      * One file per logger: api.log, intake.log, scheduler.log, ...
      * File rotation: 10MB max size, 5 backup files

    - Development (default):
      * Human-readable console output
      * No file logging

    Returns:
        Dictionary mapping logger names to configured Logger instances

    Example:
        >>> loggers = configure_logging()
        >>> loggers["intake"].info("Crossing suppressed", extra={"reason": "cooldown"})
    """
    log_level = _get_log_level()
    is_prod = _is_production()
    log_dir = _get_log_dir() if is_prod else None

    loggers = {}

    for logger_name in LOGGER_NAMES:
        logger = logging.getLogger(f"nearme.{logger_name}")
        logger.setLevel(log_level)
        logger.propagate = False

        logger.handlers.clear()

        if is_prod:
            file_handler = logging.handlers.RotatingFileHandler(
                log_dir / f"{logger_name}.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding="utf-8"
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(JSONFormatter())
            logger.addHandler(file_handler)
        else:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_level)
            console_handler.setFormatter(ConsoleFormatter())
            logger.addHandler(console_handler)

        loggers[logger_name] = logger

    return loggers


# Singleton logger instances
_loggers: Optional[Dict[str, logging.Logger]] = None


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger by name.

    Args:
        name: Logger name (see LOGGER_NAMES)

    Returns:
        Configured Logger instance

    Raises:
        ValueError: If logger name is not recognized
    """
    global _loggers

    if _loggers is None:
        _loggers = configure_logging()

    if name not in _loggers:
        raise ValueError(
            f"Unknown logger name: {name}. "
            f"Valid names: {', '.join(_loggers.keys())}"
        )

    return _loggers[name]


def init_logging() -> Dict[str, logging.Logger]:
    """
    Initialize logging configuration (called from the application lifespan).

    Returns:
        Dictionary of configured loggers
    """
    global _loggers
    _loggers = configure_logging()
    return _loggers
