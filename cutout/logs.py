"""Logging configuration."""

from __future__ import annotations

import logging
import os


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger; LOG_LEVEL is used when no level is passed."""

    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
