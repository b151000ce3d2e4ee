"""Logger factory shared by the sync components."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from core.settings import LOGGING


ROOT_LOGGER = "techtracker"


def _ensure_root() -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    if not logger.handlers:
        LOGGING.path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            LOGGING.path,
            maxBytes=LOGGING.max_bytes,
            backupCount=LOGGING.backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(LOGGING.fmt))
        logger.addHandler(handler)
        logger.setLevel(LOGGING.level)
    return logger


def get_logger(component: str) -> logging.Logger:
    """Return ``techtracker.<component>``; handlers live on the root logger."""

    _ensure_root()
    return logging.getLogger(f"{ROOT_LOGGER}.{component}")


__all__ = ["get_logger", "ROOT_LOGGER"]
