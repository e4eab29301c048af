# modkit/config/settings.py
from __future__ import annotations
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

import json5
from pydantic import JsonValue

from modkit.core.dictpath import getByPath

import logging
logger = logging.getLogger(__name__)

__all__ = [
    "SETTINGS_DEFAULTS", "SETTINGS_ENV_VAR", "loadUserSettings", "loadSettings",
    "reloadSettings", "deepMerge", "settings", "settingsBool", "settingsInt",
]


SETTINGS_ENV_VAR = "MODKIT_SETTINGS"

SETTINGS_DEFAULTS: JsonValue = {
    "__source": "MODKIT_DEFAULTS",
    "fetch": {
        # Total attempts per remote archive, including the first one
        "maxAttempts": 4,
        # Applies to a single attempt, never to the whole plan
        "timeoutMs": 30_000,
        "backoff": {"baseMs": 250, "maxMs": 4_000, "jitterRatio": 0.25},
        "cacheDir": None,
        "userAgent": "modkit/0.1",
    },
    "install": {"workers": 4},
    "archives": {"tarGzEnabled": False},
    "resolver": {"maxPasses": 32},
    "ledger": {"writeEnabledIndex": True, "protectedMods": []},
    "logging": {
        "devMode": True,
        "file": None,
        "suppressRecurring": {"enabled": False, "windowSeconds": 60, "maxPerWindow": 5, "summaryLevel": "INFO"},
    },
    "game": {"installDir": None},
}



def _userSettingsPath() -> Path:
    override = os.environ.get(SETTINGS_ENV_VAR)
    if override:
        return Path(override)
    return Path(os.path.expanduser("~/.modkit/modkit.json5"))



def loadUserSettings() -> JsonValue:
    filePath = _userSettingsPath()
    if filePath.exists():
        try:
            parsed = json5.loads(filePath.read_text(encoding="utf-8"))
        except (OSError, ValueError) as err:
            logger.error("Failed to parse '%s': %s", filePath, err)
            return {}
        if not isinstance(parsed, dict):
            logger.error("Settings file '%s' must contain a JSON object, got %s", filePath, type(parsed).__name__)
            return {}
        return cast(JsonValue, parsed)
    return {}



@lru_cache(maxsize=1)
def loadSettings() -> JsonValue:
    return deepMerge(SETTINGS_DEFAULTS, loadUserSettings())



def reloadSettings() -> None:
    """Drops the cached merged settings so the next read re-reads the user file."""
    loadSettings.cache_clear()



def deepMerge(first: JsonValue, second: JsonValue) -> JsonValue:
    """
    Returns a new JsonValue where keys from `second` override/extend `first`.
    Only merges recursively when BOTH sides are JSON objects (dicts).
    For all other JSON types (lists, strings, numbers, booleans, null),
    the right-hand value `second` replaces `first`.
    """
    if isinstance(first, dict) and isinstance(second, dict):
        out: dict[str, JsonValue] = {}
        for key, value in first.items():
            out[key] = cast(JsonValue, value)
        for key, value in second.items():
            if key in out:
                out[key] = deepMerge(out[key], cast(JsonValue, value))
            else:
                out[key] = cast(JsonValue, value)
        return cast(JsonValue, out)
    
    return cast(JsonValue, second)

# ---------- Ergonomic accessors over merged settings ----------

def settings(path: str, default: Any = None) -> Any:
    """Returns value at `path` from merged settings, or `default` if missing."""
    val = getByPath(loadSettings(), path)
    return default if val is None else val



def settingsBool(path: str, default: bool = False) -> bool:
    """Returns bool value at `path` or `default` if missing."""
    val = getByPath(loadSettings(), path)
    if isinstance(val, bool):
        return val
    if val is None:
        return default
    return bool(val)



def settingsInt(path: str, default: int) -> int:
    """Returns int value at `path`, or `default` when missing or not convertible."""
    val = getByPath(loadSettings(), path)
    if val is None or isinstance(val, bool):
        return default
    try:
        return int(val)
    except (TypeError, ValueError):
        logger.warning("Setting '%s' is not an integer (%r), using %d", path, val, default)
        return default
