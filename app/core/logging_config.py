# app/core/logging_config.py
from __future__ import annotations

import logging
import sys

from app.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str | None = None) -> None:
    """
    Console logging for the service. Safe to call more than once
    (uvicorn reload, tests): the handler is only attached the first time.
    """
    root = logging.getLogger("app")
    root.setLevel((level or settings.LOG_LEVEL or "INFO").upper())

    if any(getattr(h, "_rx_console", False) for h in root.handlers):
        return

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    ch._rx_console = True  # type: ignore[attr-defined]
    root.addHandler(ch)
