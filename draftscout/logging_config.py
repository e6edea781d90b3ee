"""Logging setup shared by the scout CLI, the sweep job and the health app."""

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s: %(message)s"

# Bibliothèques bavardes utilisées par draftscout, plafonnées à WARNING
QUIET_LOGGERS = (
    "aiohttp.client",
    "aiohttp.internal",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "alembic.runtime.migration",
    "asyncio",
    "uvicorn.access",
)


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure logging for the draftscout tools.

    Args:
        level: DEBUG, INFO, WARNING... (INFO if not specified). Applied to the
               `draftscout` logger tree as a whole, so `LOG_LEVEL=DEBUG` also
               shows the throttle and retry traces of `draftscout.riot`.
    """
    log_level = getattr(logging, level.upper()) if level else logging.INFO

    logging.basicConfig(
        level=logging.WARNING,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    logging.getLogger("draftscout").setLevel(log_level)
    logging.getLogger(__name__).debug(f"Logging initialized at level: {logging.getLevelName(log_level)}")


def get_logger(name: str) -> logging.Logger:
    """Logger of the `draftscout` tree (`name` is usually the module path)."""
    return logging.getLogger(name)
