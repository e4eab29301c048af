# modkit/core/cancel.py
from __future__ import annotations

import threading

__all__ = ["CancelToken"]



class CancelToken:
    """
    Cooperative cancellation flag shared between the caller and the pipeline.
    
    Checked between fetch attempts and before the commit phase starts. A commit
    that already started always runs to completion (or rolls back).
    """
    
    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None
    
    def cancel(self, reason: str | None = None) -> None:
        self.reason = reason
        self._event.set()
    
    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
    
    def __repr__(self) -> str:
        return f"CancelToken(cancelled={self.cancelled}, reason={self.reason!r})"
