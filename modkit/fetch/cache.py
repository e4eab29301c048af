# modkit/fetch/cache.py
from __future__ import annotations

import logging
import os
from pathlib import Path

from modkit.config.settings import settings
from modkit.core.hashing import normalizeSha256, sha256Bytes

logger = logging.getLogger(__name__)

__all__ = ["ArchiveCache"]



class ArchiveCache:
    """
    Content-addressed archive store: `<dir>/<sha[:2]>/<sha>`.

    Only verified bytes are written, and a hit is re-hashed before it is
    returned; a corrupted entry is deleted and reported as a miss.
    """

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory)

    @classmethod
    def fromSettings(cls, fallback: str | os.PathLike[str] | None = None) -> ArchiveCache | None:
        configured = settings("fetch.cacheDir", None)
        if configured:
            return cls(Path(os.path.expanduser(str(configured))))
        if fallback is not None:
            return cls(fallback)
        return None

    def pathFor(self, sha256: str) -> Path:
        digest = normalizeSha256(sha256)
        if digest is None:
            raise ValueError("Cache lookups need a SHA-256 digest")
        return self.directory / digest[:2] / digest

    def get(self, sha256: str) -> bytes | None:
        path = self.pathFor(sha256)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        if sha256Bytes(data) != normalizeSha256(sha256):
            logger.warning("Cached archive '%s' is corrupted, dropping it", path)
            path.unlink(missing_ok=True)
            return None
        logger.debug("Archive cache hit for %s", path.name)
        return data

    def put(self, sha256: str, data: bytes) -> Path:
        path = self.pathFor(sha256)
        if sha256Bytes(data) != path.name:
            raise ValueError(f"Refusing to cache bytes under a different digest ({path.name})")
        path.parent.mkdir(parents=True, exist_ok=True)
        tmpPath = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        with open(tmpPath, "wb") as fl:
            fl.write(data)
            fl.flush()
            os.fsync(fl.fileno())
        os.replace(tmpPath, path)
        logger.debug("Cached archive %s (%d bytes)", path.name, len(data))
        return path

    def __contains__(self, sha256: object) -> bool:
        return isinstance(sha256, str) and self.pathFor(sha256).is_file()
