from __future__ import annotations

import logging
import os
from typing import Optional

LOG_LEVEL_ENV = "PJN_SYNC_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _level_from_env() -> int:
    name = os.getenv(LOG_LEVEL_ENV, "INFO").upper()
    level = getattr(logging, name, None)
    if not isinstance(level, int):
        return logging.INFO
    return level


def configure_logging(level: Optional[int] = None) -> None:
    """
    Route pjn_sync.* loggers to stderr for the manager and worker commands.

    Worker instances started by the supervisor inherit stderr, which is
    redirected into ``<instance>.log`` when PJN_SYNC_WORKER_LOG_DIR is set.
    Calling this again only changes the level.
    """
    if level is None:
        level = _level_from_env()

    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return

    logging.basicConfig(level=level, format=LOG_FORMAT)
    # Keep SQL echo out of tick and run summaries.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


__all__ = ["configure_logging"]
