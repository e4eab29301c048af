# modkit/core/dictpath.py
from __future__ import annotations
from typing import Any
from collections.abc import Mapping

__all__ = ["getByPath", "splitPath"]



# ----------------------------------------------
#                  path parsing
# ----------------------------------------------

def splitPath(path: str) -> list[str]:
    """
    Splits a dotted/slashed path where '.' and '/' are segment separators,
    and backslash '\\' escapes the next character (including separators).

    Examples:
      - a.b.c   -> ["a", "b", "c"]
      - a\\.b/c -> ["a.b", "c"]
    
    Raises ValueError for empty paths, empty segments and dangling escapes.
    """
    if not isinstance(path, str) or not path:
        raise ValueError("Path must be a non-empty string")
    
    parts: list[str] = []
    curr: list[str] = []
    esc = False
    for ch in path:
        if esc:
            curr.append(ch)
            esc = False
            continue
        if ch == "\\":
            esc = True
            continue
        if ch in (".", "/"):
            parts.append("".join(curr))
            curr = []
            continue
        curr.append(ch)
    if esc:
        raise ValueError("Path ends with a dangling escape (trailing backslash)")
    parts.append("".join(curr))
    
    # Empty segment means there were consecutive separators or leading/trailing separator, e.g. a..b or a.b.
    if any(part == "" for part in parts):
        raise ValueError(f"Path '{path}' contains empty segment(s)")
    return parts



# ----------------------------------------------
#                   Public API
# ----------------------------------------------

def getByPath(obj: Any, path: str, default: Any | None = None) -> Any:
    """
    Returns the value at `path` from `obj` if reachable. When the chain
    cannot be resolved, returns `default`.

    Resolution rules per hop:
      • if current is a mapping and key exists → descend by key
      • else → try getattr
      • invalid path/failure → return default
    """
    try:
        parts = splitPath(path)
    except ValueError:
        # Invalid path is treated as "not found"
        return default
    
    current: Any = obj
    for part in parts:
        if isinstance(current, Mapping):
            if part in current:
                current = current[part]
                continue
            return default
        if hasattr(current, part):
            try:
                current = getattr(current, part)
                continue
            except Exception:
                return default
        return default
    return current
