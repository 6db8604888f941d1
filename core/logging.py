"""
Logging configuration
"""

import logging
import sys
from typing import Optional

from core.config import Settings, settings as default_settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that log every statement, job tick or request at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "apscheduler", "httpx")


def _level(name: str, fallback: int) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else fallback


def setup_logging(settings: Optional[Settings] = None):
    """
    Route application logs to stdout at LOG_LEVEL.

    Repeat calls keep the first handler; library log levels are always
    reapplied.
    """
    settings = settings or default_settings
    app_level = _level(settings.LOG_LEVEL, logging.INFO)

    logging.basicConfig(
        level=app_level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    library_level = _level(settings.LIBRARY_LOG_LEVEL, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logging.getLogger(__name__).info(
        f"Logging configured: app={logging.getLevelName(app_level)} "
        f"libraries={logging.getLevelName(library_level)} env={settings.ENVIRONMENT}"
    )
