# modkit/core/logger.py
from __future__ import annotations
from .logging import (
    configureLogging,
    getModLogger,
    setLogContext,
    clearLogContext,
    getLogContext,
)

__all__ = [
    "configureLogging",
    "getModLogger",
    "setLogContext",
    "clearLogContext",
    "getLogContext",
]
