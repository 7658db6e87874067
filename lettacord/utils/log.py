"""Loguru sink configuration."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger


def setup_logging(level: str = "INFO", production: bool = False, log_dir: Path | None = None) -> None:
    """Replace loguru's default sink.

    Production (containers): JSON lines on stdout for log collection.
    Development: colourised console plus ``error.log`` / ``combined.log``.
    """
    logger.remove()

    if production:
        logger.add(sys.stdout, level=level, serialize=True)
        return

    logger.add(sys.stderr, level=level, colorize=True)
    log_dir = log_dir or Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(log_dir / "error.log", level="ERROR", rotation="10 MB", retention=5)
    logger.add(log_dir / "combined.log", level=level, rotation="10 MB", retention=5)
