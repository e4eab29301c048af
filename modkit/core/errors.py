# modkit/core/errors.py
from __future__ import annotations

__all__ = ["ModkitError", "PlanEntryError", "TreeBusyError"]



class ModkitError(Exception):
    """Base class for every error raised by modkit."""
    pass



class PlanEntryError(ModkitError):
    """
    Wraps a failure of a single install plan entry with the stage it failed in.
    
    The original error is kept on `cause` (and chained via `__cause__`).
    """
    
    def __init__(self, identity: object, stage: str, cause: BaseException) -> None:
        super().__init__(f"{identity}: {stage} failed: {cause}")
        self.identity = identity
        self.stage = stage
        self.cause = cause



class TreeBusyError(ModkitError):
    """Raised when another pipeline already holds the lock on a mods tree."""
    
    def __init__(self, root: object) -> None:
        super().__init__(f"Mods tree at '{root}' is busy: another installation is running")
        self.root = root
