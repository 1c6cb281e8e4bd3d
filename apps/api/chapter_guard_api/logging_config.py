from __future__ import annotations

import logging
import os


_LOGGER_NAME = "chapter_guard_api"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> logging.Logger:
    """
    Attach one console handler to the package logger.

    Safe to call repeatedly (app reloads, TestClient lifespans).
    """

    resolved = (level or os.getenv("CHAPTER_GUARD_LOG_LEVEL") or "INFO").strip().upper()
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(getattr(logging, resolved, logging.INFO))
    if not any(getattr(h, "_chapter_guard", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._chapter_guard = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
