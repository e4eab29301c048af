# modkit/install/errors.py
from __future__ import annotations

from modkit.core.errors import ModkitError

__all__ = [
    "InstallError",
    "UnsafePathError",
    "UnsupportedArchiveError",
    "CorruptArchiveError",
    "LayoutMismatchError",
    "CommitError",
    "InstallCancelledError",
    "SlotOccupiedError",
]



class InstallError(ModkitError):
    """Base class for staging/commit failures of a single mod."""



class UnsafePathError(InstallError):
    """Archive member would land outside the staging area (or is a link/device). Always fatal."""
    
    def __init__(self, path: str, reason: str = "path escapes the extraction root") -> None:
        super().__init__(f"Unsafe archive entry {path!r}: {reason}")
        self.path = path
        self.reason = reason



class UnsupportedArchiveError(InstallError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Unsupported archive: {reason}")
        self.reason = reason



class CorruptArchiveError(InstallError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Corrupt archive: {reason}")
        self.reason = reason



class LayoutMismatchError(InstallError):
    def __init__(self, expected: tuple[str, ...] | None, found: tuple[str, ...], reason: str) -> None:
        super().__init__(f"Archive layout mismatch: {reason} (expected={list(expected) if expected is not None else 'single root directory'}, found={list(found)})")
        self.expected = expected
        self.found = found
        self.reason = reason



class CommitError(InstallError):
    """Placement failed; the destination slot was restored to its previous state."""
    
    def __init__(self, slot: object, reason: str) -> None:
        super().__init__(f"Commit into '{slot}' failed and was rolled back: {reason}")
        self.slot = slot
        self.reason = reason



class InstallCancelledError(InstallError):
    def __init__(self, reason: str | None = None) -> None:
        super().__init__(f"Installation cancelled before commit{': ' + reason if reason else ''}")
        self.reason = reason



class SlotOccupiedError(InstallError):
    """The destination slot exists but no ledger record owns it."""
    
    def __init__(self, slot: object) -> None:
        super().__init__(f"Destination '{slot}' exists but is not managed by the ledger; refusing to replace it")
        self.slot = slot
