# modkit/fetch/fetcher.py
from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path

import httpx

from modkit.config.settings import settings, settingsInt
from modkit.core.cancel import CancelToken
from modkit.core.errors import ModkitError
from modkit.core.hashing import sha256Bytes
from modkit.core.redaction import redactText
from modkit.fetch.cache import ArchiveCache
from modkit.resolver.pool import LocalSource, RemoteSource, SourceDescriptor

logger = logging.getLogger(__name__)

__all__ = [
    "FetchError",
    "RejectedError",
    "IntegrityMismatchError",
    "TransientExhaustedError",
    "FetchCancelledError",
    "LocalSourceError",
    "ProgressCallback",
    "RetryPolicy",
    "ArchiveFetcher",
    "isTransientStatus",
]



ProgressCallback = Callable[[int, "int | None"], None]

# Upper bound for a server supplied Retry-After
_RETRY_AFTER_CAP_SECONDS = 60.0



# ------------------------------------------------------------------ #
# Errors
# ------------------------------------------------------------------ #

class FetchError(ModkitError):
    """Base class for archive acquisition failures."""



class RejectedError(FetchError):
    """Non-retryable HTTP status (4xx other than 408/429)."""

    def __init__(self, url: str, status: int) -> None:
        super().__init__(f"GET {redactText(url)} rejected with HTTP {status}")
        self.url = url
        self.status = status



class IntegrityMismatchError(FetchError):
    """Size or digest differs from what the pool declared. Never retried."""

    def __init__(self, source: object, what: str, expected: object, actual: object) -> None:
        super().__init__(f"Integrity check failed for {redactText(str(source))}: {what} expected {expected}, got {actual}")
        self.source = source
        self.what = what
        self.expected = expected
        self.actual = actual



class TransientExhaustedError(FetchError):
    def __init__(self, url: str, attempts: int, lastError: BaseException | str) -> None:
        super().__init__(f"GET {redactText(url)} failed after {attempts} attempt(s): {lastError}")
        self.url = url
        self.attempts = attempts
        self.lastError = lastError



class FetchCancelledError(FetchError):
    def __init__(self, reason: str | None = None) -> None:
        super().__init__(f"Fetch cancelled{': ' + reason if reason else ''}")
        self.reason = reason



class LocalSourceError(FetchError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Cannot read local archive '{path}': {reason}")
        self.path = path
        self.reason = reason



# ------------------------------------------------------------------ #
# Retry policy
# ------------------------------------------------------------------ #

def isTransientStatus(status: int) -> bool:
    # Timeouts, throttling and server side failures are worth another attempt
    return status in (408, 429) or 500 <= status <= 599



def _parseRetryAfter(value: str | None) -> float | None:
    """Return seconds suggested by Retry-After header, if parsable."""
    if not value:
        return None
    # Retry-After: seconds
    try:
        seconds = float(value)
        if seconds >= 0:
            return seconds
        return None
    except ValueError:
        pass
    # Retry-After: HTTP-date
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, dt.timestamp() - datetime.now(timezone.utc).timestamp())



@dataclass(frozen=True)
class RetryPolicy:
    # Total attempts including the first one
    maxAttempts: int = 4
    baseMs: int = 250
    maxMs: int = 4_000
    jitterRatio: float = 0.25

    @classmethod
    def fromSettings(cls) -> RetryPolicy:
        return cls(
            maxAttempts=max(1, settingsInt("fetch.maxAttempts", 4)),
            baseMs=max(0, settingsInt("fetch.backoff.baseMs", 250)),
            maxMs=max(0, settingsInt("fetch.backoff.maxMs", 4_000)),
            jitterRatio=float(settings("fetch.backoff.jitterRatio", 0.25)),
        )

    def delayFor(self, retryNo: int, *, retryAfter: float | None = None, rng: random.Random | None = None) -> float:
        """
        Seconds to wait before retry number `retryNo` (0 for the first retry):
        base * 2**n capped at max, scaled by a random factor in
        [1 - jitter, 1 + jitter]. A Retry-After hint wins when it is longer.
        """
        rng = rng or random
        delayMs = min(self.maxMs, self.baseMs * (2 ** retryNo))
        ratio = max(0.0, min(1.0, self.jitterRatio))
        seconds = delayMs * rng.uniform(1.0 - ratio, 1.0 + ratio) / 1_000
        if retryAfter is not None:
            seconds = max(seconds, min(retryAfter, _RETRY_AFTER_CAP_SECONDS))
        return seconds



class _TransientFailure(Exception):
    """One failed attempt that may be retried."""

    def __init__(self, description: str, retryAfter: float | None = None) -> None:
        super().__init__(description)
        self.retryAfter = retryAfter



# ------------------------------------------------------------------ #
# Fetcher
# ------------------------------------------------------------------ #

class ArchiveFetcher:
    """
    Returns verified archive bytes for a SourceDescriptor.

    Remote sources go through an httpx.AsyncClient; pass `transport` (e.g.
    httpx.MockTransport) or a ready `client` to replace the network. The
    fetcher never hands out bytes that failed a size or digest check.

        async with ArchiveFetcher() as fetcher:
            data = await fetcher.fetch(RemoteSource(url, sha256=digest))
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        policy: RetryPolicy | None = None,
        timeoutMs: int | None = None,
        cache: ArchiveCache | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy.fromSettings()
        if timeoutMs is None:
            timeoutMs = settingsInt("fetch.timeoutMs", 30_000)
        self.timeoutSeconds = max(1, timeoutMs) / 1_000
        self.cache = cache
        self._sleep = sleep
        self._rng = rng
        self._ownsClient = client is None
        self._client = client or httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(self.timeoutSeconds),
            follow_redirects=True,
            headers={"User-Agent": str(settings("fetch.userAgent", "modkit"))},
        )

    async def aclose(self) -> None:
        if self._ownsClient:
            await self._client.aclose()

    async def __aenter__(self) -> ArchiveFetcher:
        return self

    async def __aexit__(self, excType, exc, tb) -> None:
        await self.aclose()

    # ----- Public ----- #

    async def fetch(
        self,
        source: SourceDescriptor,
        *,
        cancel: CancelToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> bytes:
        if cancel is not None and cancel.cancelled:
            raise FetchCancelledError(cancel.reason)
        if isinstance(source, LocalSource):
            return await self._fetchLocal(source, progress)
        if isinstance(source, RemoteSource):
            return await self._fetchRemote(source, cancel, progress)
        raise TypeError(f"Unsupported source descriptor {type(source).__name__}")

    # ----- Local ----- #

    async def _fetchLocal(self, source: LocalSource, progress: ProgressCallback | None) -> bytes:
        try:
            data = await asyncio.to_thread(source.path.read_bytes)
        except OSError as err:
            raise LocalSourceError(source.path, err.strerror or str(err)) from err
        self._verify(source, data)
        if progress is not None:
            progress(len(data), len(data))
        logger.debug("Read local archive '%s' (%d bytes)", source.path, len(data))
        return data

    # ----- Remote ----- #

    async def _fetchRemote(
        self,
        source: RemoteSource,
        cancel: CancelToken | None,
        progress: ProgressCallback | None,
    ) -> bytes:
        if self.cache is not None and source.sha256:
            cached = await asyncio.to_thread(self.cache.get, source.sha256)
            if cached is not None:
                self._verify(source, cached)
                if progress is not None:
                    progress(len(cached), len(cached))
                return cached

        url = source.url
        lastError: BaseException | str = "no attempt made"
        for attempt in range(1, self.policy.maxAttempts + 1):
            if cancel is not None and cancel.cancelled:
                raise FetchCancelledError(cancel.reason)
            try:
                data = await asyncio.wait_for(self._attempt(source, progress), timeout=self.timeoutSeconds)
            except _TransientFailure as failure:
                lastError = str(failure)
                retryAfter = failure.retryAfter
            except asyncio.TimeoutError as err:
                lastError = err
                retryAfter = None
                logger.debug("GET %s attempt %d timed out", redactText(url), attempt)
            except httpx.TransportError as err:
                lastError = err
                retryAfter = None
                logger.debug("GET %s attempt %d: %s", redactText(url), attempt, err)
            else:
                if attempt > 1:
                    logger.info("GET %s succeeded on attempt %d", redactText(url), attempt)
                if self.cache is not None and source.sha256:
                    await asyncio.to_thread(self.cache.put, source.sha256, data)
                return data

            if attempt < self.policy.maxAttempts:
                delay = self.policy.delayFor(attempt - 1, retryAfter=retryAfter, rng=self._rng)
                logger.warning(
                    "GET %s failed (%s), retry %d/%d in %.2fs",
                    redactText(url), lastError, attempt, self.policy.maxAttempts - 1, delay,
                )
                await self._sleep(delay)

        raise TransientExhaustedError(url, self.policy.maxAttempts, lastError)

    async def _attempt(self, source: RemoteSource, progress: ProgressCallback | None) -> bytes:
        async with self._client.stream("GET", source.url) as resp:
            status = resp.status_code
            if isTransientStatus(status):
                raise _TransientFailure(f"HTTP {status}", _parseRetryAfter(resp.headers.get("Retry-After")))
            if not 200 <= status <= 299:
                raise RejectedError(source.url, status)

            # Content-Length counts the encoded body; aiter_bytes yields decoded bytes
            contentLength: int | None = None
            rawLength = resp.headers.get("Content-Length")
            encoding = resp.headers.get("Content-Encoding", "").strip().lower()
            if rawLength is not None and rawLength.strip().isdigit() and encoding in ("", "identity"):
                contentLength = int(rawLength)
            if source.size is not None and contentLength is not None and contentLength != source.size:
                raise IntegrityMismatchError(source, "Content-Length", source.size, contentLength)
            total = source.size if source.size is not None else contentLength

            buffer = bytearray()
            async for chunk in resp.aiter_bytes():
                buffer.extend(chunk)
                if source.size is not None and len(buffer) > source.size:
                    raise IntegrityMismatchError(source, "size", source.size, f"more than {source.size} bytes")
                if progress is not None:
                    progress(len(buffer), total)

        data = bytes(buffer)
        if contentLength is not None and len(data) != contentLength:
            raise IntegrityMismatchError(source, "Content-Length", contentLength, len(data))
        self._verify(source, data)
        logger.debug("Downloaded %s (%d bytes)", redactText(source.url), len(data))
        return data

    # ----- Verification ----- #

    def _verify(self, source: LocalSource | RemoteSource, data: bytes) -> None:
        if source.size is not None and len(data) != source.size:
            raise IntegrityMismatchError(source, "size", source.size, len(data))
        if source.sha256 is not None:
            actual = sha256Bytes(data)
            if actual != source.sha256:
                raise IntegrityMismatchError(source, "sha256", source.sha256, actual)
