"""Logging setup for the EPTW core.

Log lines carry UTC ISO 8601 timestamps so they line up with ledger
entries, which are recorded in naive UTC.
"""

import logging
import logging.handlers
import time
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
UTC_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class UTCFormatter(logging.Formatter):
    converter = time.gmtime


def _resolve_level(level: str) -> int:
    name = level.upper()
    if name not in LEVELS:
        raise ValueError(f"Invalid log level: {level}. Must be one of: {', '.join(LEVELS)}")
    return getattr(logging, name)


def setup_logger(
    name: str,
    log_dir: str = "/var/log/eptw",
    level: str = "INFO",
    log_format: Optional[str] = None,
    file_logging: bool = True,
    console_logging: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Attach console and rotating-file handlers to the named logger.

    Calling it again for a logger that already has handlers only updates
    the level.

    Args:
        name: Logger name; also the log file name
        log_dir: Directory for ``<name>.log``
        level: One of DEBUG, INFO, WARNING, ERROR, CRITICAL
        log_format: Format string, LOG_FORMAT by default
        file_logging: Write to a rotating file
        console_logging: Write to stderr
        max_bytes: File size that triggers rotation
        backup_count: Rotated files to keep
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))
    if logger.handlers:
        return logger

    formatter = UTCFormatter(log_format or LOG_FORMAT, datefmt=UTC_DATE_FORMAT)
    handlers = []
    if file_logging:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            directory / f"{name}.log", maxBytes=max_bytes, backupCount=backup_count
        ))
    if console_logging:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def configure_from_settings(settings) -> logging.Logger:
    """Configure the ``eptw`` package logger; every module logger propagates to it."""
    return setup_logger(
        "eptw",
        log_dir=settings.log_dir,
        level=settings.log_level,
        file_logging=settings.log_to_file,
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
