"""Logging setup for applications embedding the agent."""

from __future__ import annotations

import logging
import os
from typing import Optional, Union

LOGGER_NAME = "magma_agent"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[Union[str, int]] = None) -> logging.Logger:
    """Attach one stream handler to the package logger.

    ``level`` falls back to ``MAGMA_LOG_LEVEL`` and then ``INFO``. Calling
    this again only updates the level.
    """
    if level is None:
        level = os.environ.get("MAGMA_LOG_LEVEL") or "INFO"
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    if not any(getattr(h, "_magma_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._magma_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger


__all__ = ["LOGGER_NAME", "configure_logging"]
