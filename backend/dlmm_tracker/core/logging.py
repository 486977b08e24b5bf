"""
Logging configuration for the DLMM position tracker.

Call setup_logging() once at process start (the FastAPI lifespan and the
debug script both do). Library modules only ever use
logging.getLogger(__name__).

Log Levels:
    DEBUG   - Raw payload shapes, cache hits, per-strategy outcomes
    INFO    - Pipeline milestones (history fetched, ledger built)
    WARNING - Rate-limit retries, sources returning malformed data
    ERROR   - Item-level failures recorded into an errors list
"""
import logging
import sys
from typing import Optional

from dlmm_tracker.core.config import settings

DEFAULT_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = [
    "httpx",
    "httpcore",
    "asyncio",
]


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger with a single stdout handler."""
    log_level = (level or settings.log_level).upper()

    root = logging.getLogger()
    root.setLevel(log_level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(DEFAULT_TEXT_FORMAT, DEFAULT_DATE_FORMAT))
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
