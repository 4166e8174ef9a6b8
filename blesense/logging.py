"""Logger setup shared by every blesense module."""

from __future__ import annotations

import logging
import sys

import config

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def get_logger(name: str) -> logging.Logger:
    """Return a named logger with the shared handler attached once."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))
        logger.propagate = False
    return logger


# Pre-configured loggers
app_logger = get_logger('blesense')
scan_logger = get_logger('blesense.scanning')
storage_logger = get_logger('blesense.storage')
