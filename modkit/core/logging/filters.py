# modkit/core/logging/filters.py
from __future__ import annotations
import logging
import time
import threading
from collections import deque
from collections.abc import Callable

from modkit.core.redaction import redactText

__all__ = ["RecurringSuppressFilter"]



class RecurringSuppressFilter(logging.Filter):
    """
    Lets at most `maxPerWindow` records with the same logger, level and
    message template through per sliding `windowSeconds`. The rest are
    counted and reported in one summary line once the key is allowed again.

    Keys use the unformatted template (record.msg), so the fetcher's retry
    warnings, whose arguments change on every attempt, count as one message.
    """
    def __init__(
            self,
            *,
            windowSeconds: int = 60,
            maxPerWindow: int = 5,
            summaryLevel: int = logging.INFO,
            clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self.windowSeconds = max(1, int(windowSeconds))
        self.maxPerWindow = max(1, int(maxPerWindow))
        self.summaryLevel = int(summaryLevel)
        self._clock = clock
        # Timestamps of the records let through, per key
        self._allowed: dict[tuple[str, int, str], deque[float]] = {}
        self._suppressed: dict[tuple[str, int, str], int] = {}
        self._lock = threading.Lock()

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "modkitSuppressSummary", False):
            return True

        key = (record.name, record.levelno, str(record.msg))
        now = self._clock()
        with self._lock:
            stamps = self._allowed.setdefault(key, deque())
            while stamps and stamps[0] <= now - self.windowSeconds:
                stamps.popleft()
            if len(stamps) >= self.maxPerWindow:
                self._suppressed[key] = self._suppressed.get(key, 0) + 1
                return False
            stamps.append(now)
            suppressed = self._suppressed.pop(key, 0)

        if suppressed:
            logging.getLogger(record.name).log(
                self.summaryLevel,
                "Suppressed %d repeated logs: %s",
                suppressed,
                redactText(" ".join(str(record.msg).split())),
                extra={"modkitSuppressSummary": True},
            )
        return True
