# modkit/core/jsonutils.py
from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import PurePath
from typing import Any

__all__ = ["safeJsonDumps", "describeError"]



def _jsonDefault(obj: Any) -> Any:
    # Identities and versions render through __str__ ("Core-Lib", "1.2.0")
    if isinstance(obj, BaseException):
        return describeError(obj)
    if isinstance(obj, PurePath):
        return obj.as_posix()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if is_dataclass(obj) and not isinstance(obj, type) and type(obj).__str__ is object.__str__:
        return asdict(obj)
    return str(obj)



def safeJsonDumps(obj: object) -> str:
    """
    Compact one-line JSON for log records. Non-JSON values fall back to a
    readable form instead of raising; a circular payload degrades to its repr.
    """
    try:
        return json.dumps(obj, ensure_ascii=False, allow_nan=False, separators=(",", ":"), default=_jsonDefault)
    except ValueError:
        return json.dumps({"unserializable": repr(obj)}, ensure_ascii=False, separators=(",", ":"))



def describeError(err: BaseException) -> dict[str, Any]:
    """
    Type, message and direct cause of an exception, plus the structured
    attributes modkit errors carry (identity, stage, status, path).
    """
    data: dict[str, Any] = {"type": type(err).__name__, "message": str(err)}
    for attr in ("identity", "stage", "status", "path"):
        value = getattr(err, attr, None)
        if value is not None:
            data[attr] = str(value)
    cause = err.__cause__
    if cause is not None and cause is not err:
        data["cause"] = {"type": type(cause).__name__, "message": str(cause)}
    return data
