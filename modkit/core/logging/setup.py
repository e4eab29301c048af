# modkit/core/logging/setup.py
from __future__ import annotations
import logging
import logging.handlers

from modkit.config.settings import settings, settingsBool, settingsInt
from .formatters import DevFormatter, JsonFormatter, RedactingFormatter
from .filters import RecurringSuppressFilter

__all__ = [
    "NO_PROPAGATE",
    "configureLogging",
]



# Disable propagation from chatty libraries. httpx keeps propagating so its
# warnings reach the configured handlers; its level is raised below instead.
NO_PROPAGATE = [
    "httpcore.connection", "httpcore.http11",
    "asyncio",
]



def configureLogging(level: int | None = None) -> None:
    """
    Opt-in process-wide logging configuration for embedding applications.

    The modkit library itself never calls this; it only uses module loggers.

    Dev:
      - Console pretty logs (DEBUG)
    Prod:
      - Console INFO
    Both:
      - Optional JSON-lines file log with rotation (`logging.file`)
      - Token scrubbing in URLs/headers
      - Optional recurring suppression (`logging.suppressRecurring.enabled`)
    """
    devMode = settingsBool("logging.devMode", True)
    rootLevel = level if level is not None else (logging.DEBUG if devMode else logging.INFO)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(rootLevel)
    
    for name in NO_PROPAGATE:
        logging.getLogger(name).propagate = False

    handlers: list[logging.Handler] = []

    consoleHandler = logging.StreamHandler()
    consoleHandler.setLevel(rootLevel)
    consoleHandler.setFormatter(RedactingFormatter(DevFormatter()))
    handlers.append(consoleHandler)

    logFile = settings("logging.file", None)
    if logFile:
        fileHandler = logging.handlers.RotatingFileHandler(
            str(logFile),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8"
        )
        fileHandler.setLevel(rootLevel)
        fileHandler.setFormatter(RedactingFormatter(JsonFormatter()))
        handlers.append(fileHandler)

    if settingsBool("logging.suppressRecurring.enabled", False):
        levelName = str(settings("logging.suppressRecurring.summaryLevel", "INFO")).upper()
        summaryLevel = getattr(logging, levelName, logging.INFO)

        suppressFilter = RecurringSuppressFilter(
            windowSeconds=settingsInt("logging.suppressRecurring.windowSeconds", 60),
            maxPerWindow=settingsInt("logging.suppressRecurring.maxPerWindow", 5),
            summaryLevel=summaryLevel,
        )
        for handler in handlers:
            handler.addFilter(suppressFilter)

    for handler in handlers:
        root.addHandler(handler)

    # Per-logger tweaks (reduce noise)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
