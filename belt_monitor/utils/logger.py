"""
Logging configuration for the Belt UserOp Monitor.
"""
from __future__ import annotations

import logging
import sys


def setup_logging(level: int | str = logging.INFO) -> None:
    """Configure the root logger with a consistent format."""
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    date_fmt = "%Y-%m-%d %H:%M:%S"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt, datefmt=date_fmt))

    root = logging.getLogger()
    root.setLevel(level.upper() if isinstance(level, str) else level)
    # Avoid duplicate handlers if called multiple times
    root.handlers = [handler]

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
