# Path: knowledge/logging_config.py
# Purpose: Configure standard-library logging for the knowledge core.
# Layer: knowledge.
# Details: Installs a single stderr handler on the package logger; safe to call repeatedly.

from __future__ import annotations

import logging
import sys
from typing import Union

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"
PACKAGE_LOGGER = "knowledge"


def configure_logging(level: Union[int, str] = "INFO") -> logging.Logger:
    """Attach a stderr handler to the package logger and set its level.

    Calling this more than once only updates the level; no duplicate handlers are added.
    """

    logger = logging.getLogger(PACKAGE_LOGGER)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    if not any(getattr(handler, "_knowledge_handler", False) for handler in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        handler._knowledge_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger


def enable_debug_mode() -> logging.Logger:
    """Switch the package logger to DEBUG output."""

    return configure_logging(logging.DEBUG)


__all__ = ["configure_logging", "enable_debug_mode"]
