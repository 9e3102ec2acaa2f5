"""Logging helpers for intensity reduction."""
from __future__ import annotations

import logging

from typing import Optional, Union

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def parse_level(level: Union[int, str, None]) -> int:
    """Return a numeric level for ``level`` (name or number); INFO when None."""

    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level '{level}'")
    return value


def _ensure_configured(level: int) -> None:
    global _configured
    if not _configured:
        logging.basicConfig(level=level, format=LOG_FORMAT)
        _configured = True


def get_logger(name: str, level: Union[int, str, None] = None) -> logging.Logger:
    """Return a configured logger instance.

    The first call configures the root logger with a basic format.  Later
    calls return ``logging.getLogger(name)``; a ``level`` passed then is
    applied to the root logger only.
    """

    numeric = parse_level(level)
    if _configured and level is not None:
        logging.getLogger().setLevel(numeric)
    _ensure_configured(numeric)
    return logging.getLogger(name)
