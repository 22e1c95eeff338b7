#!/usr/bin/env python3
"""Shared logging helpers for the liquidator."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from env_utils import env_str

_DEFAULT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _env_level(default: int) -> int:
    raw = env_str("LIQUIDATOR_LOG_LEVEL")
    if not raw:
        return default
    val = str(raw).strip().upper()
    if val.isdigit():
        return int(val)
    return getattr(logging, val, default)


def _env_zone() -> Optional[ZoneInfo]:
    raw = env_str("LIQUIDATOR_LOG_TZ")
    if not raw:
        return None
    try:
        return ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError):
        return None


class ZoneFormatter(logging.Formatter):
    """Formatter rendering asctime in a fixed display timezone (local time when unset)."""

    def __init__(self, fmt: str, datefmt: str, zone: Optional[ZoneInfo] = None):
        super().__init__(fmt, datefmt=datefmt)
        self.zone = zone

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        if self.zone is None:
            return super().formatTime(record, datefmt)
        stamp = datetime.fromtimestamp(record.created, tz=self.zone)
        return stamp.strftime(datefmt or _DEFAULT_DATEFMT)


def _formatter() -> logging.Formatter:
    return ZoneFormatter(_DEFAULT_FORMAT, _DEFAULT_DATEFMT, _env_zone())


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Get or create a logger with standard formatting."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_formatter())
        logger.addHandler(handler)
    logger.setLevel(_env_level(logging.INFO) if level is None else level)
    return logger


def setup_logging(
    name: str,
    log_file: Optional[str] = None,
    verbose: bool = False,
    level: Optional[int] = None,
) -> logging.Logger:
    """Setup logging for a component (console + optional file)."""
    logger = logging.getLogger(name)
    logger.handlers = []
    logger.setLevel(_env_level(logging.DEBUG if verbose else logging.INFO) if level is None else level)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter())
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(_formatter())
    logger.addHandler(console_handler)

    return logger
