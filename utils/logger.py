"""
Structured Logger — File + Console with Daily Rotation

Provides a centralized logging facility for all modules.
Log format: [timestamp UTC] [level] [module] message
"""

import logging
import sys
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler

from config.settings import LOG_DIR, LOG_FILE_NAME, LOG_LEVEL, UTC


class UTCFormatter(logging.Formatter):
    """Formatter that stamps records with ISO-8601 UTC time."""

    def formatTime(self, record, datefmt=None):
        ct = datetime.fromtimestamp(record.created, tz=UTC)
        if datefmt:
            return ct.strftime(datefmt)
        return ct.isoformat(timespec="milliseconds")


def get_logger(name: str) -> logging.Logger:
    """
    Get or create a logger with the given name.

    Each logger gets:
    - Console handler (stdout)
    - File handler (daily rotation, kept 14 days)

    Args:
        name: Module name, e.g., 'listener.connection_manager'

    Returns:
        Configured logging.Logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))

    fmt = "[%(asctime)s] [%(levelname)-8s] [%(name)s] %(message)s"
    formatter = UTCFormatter(fmt=fmt)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.DEBUG)
    logger.addHandler(console_handler)

    # File handler — daily rotation
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    file_handler = TimedRotatingFileHandler(
        filename=str(LOG_DIR / LOG_FILE_NAME),
        when="midnight",
        interval=1,
        backupCount=14,
        encoding="utf-8",
        utc=True,
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)
    logger.addHandler(file_handler)

    logger.propagate = False

    return logger
