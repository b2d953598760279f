"""Centralized logging setup for the signaling service and peers."""
from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Install a console handler on the package logger once."""

    logger = logging.getLogger("signalroom")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(getattr(handler, "_signalroom", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        handler._signalroom = True  # type: ignore[attr-defined]
        logger.addHandler(handler)

    return logger
