"""Logging setup shared by the API process and background workers."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_HANDLER_NAME = "parcel-risk"


def configure_logging(level: str | int = "INFO") -> None:
    """Install a single stream handler on the ``app`` logger.

    Safe to call more than once: the handler is only added the first time
    and later calls just update the level.

    Args:
        level: Logging level name or number.
    """
    logger = logging.getLogger("app")
    logger.setLevel(level)
    if any(h.get_name() == _HANDLER_NAME for h in logger.handlers):
        return

    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
