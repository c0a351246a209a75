"""Logging setup for applications embedding marketchat."""

from __future__ import annotations

import logging
import sys

LOGGER_NAME = "marketchat"
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """
    Attach one stream handler to the package logger.

    Safe to call more than once; the handler is only installed the first time.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(getattr(h, "_marketchat", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._marketchat = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
