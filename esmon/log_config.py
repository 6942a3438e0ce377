"""Logging setup for the esmon command line entry points."""

from __future__ import annotations

import logging
import os
import sys

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Route esmon loggers to stderr, keeping stdout free for event output."""
    level_name = (level or os.environ.get("ESMON_LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger("esmon")
    root.setLevel(getattr(logging, level_name, logging.INFO))
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
