# modkit/fetch/index.py
from __future__ import annotations

import logging

import json5

from modkit.core.cancel import CancelToken
from modkit.core.redaction import redactText
from modkit.fetch.fetcher import ArchiveFetcher
from modkit.manifest.parser import MalformedManifestError
from modkit.resolver.pool import ModPoolEntry, RemoteSource, poolEntriesFromIndex

logger = logging.getLogger(__name__)

__all__ = ["fetchIndex"]



async def fetchIndex(
    url: str,
    *,
    fetcher: ArchiveFetcher | None = None,
    cancel: CancelToken | None = None,
) -> list[ModPoolEntry]:
    """
    Download a remote package index and turn it into pool entries.

    The index is a JSON array of manifest objects carrying `url` (relative
    urls resolve against the index url), and optional `sha256` and `size`.
    Uses the fetcher's retry policy; a temporary fetcher is created (and
    closed) when none is given.
    """
    ownsFetcher = fetcher is None
    active = fetcher or ArchiveFetcher()
    try:
        raw = await active.fetch(RemoteSource(url), cancel=cancel)
    finally:
        if ownsFetcher:
            await active.aclose()

    try:
        document = json5.loads(raw.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError) as err:
        raise MalformedManifestError(f"package index at {redactText(url)} is not valid JSON: {err}") from err

    entries = poolEntriesFromIndex(document, baseUrl=url)
    logger.info("Package index %s lists %d archive(s)", redactText(url), len(entries))
    return entries
