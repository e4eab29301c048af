# modkit/resolver/pool.py
from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

import httpx

from modkit.core.errors import ModkitError
from modkit.core.hashing import normalizeSha256, sha256File
from modkit.install.archive import tarGzEnabled
from modkit.manifest.discovery import SIDECAR_SUFFIXES, findManifestInArchive, findSidecarManifest
from modkit.manifest.model import ModIdentity, ModManifest
from modkit.manifest.parser import MalformedManifestError, manifestFromMapping
from modkit.manifest.version import ModVersion

logger = logging.getLogger(__name__)

__all__ = [
    "LocalSource",
    "RemoteSource",
    "SourceDescriptor",
    "ModPoolEntry",
    "ModPool",
    "poolEntriesFromIndex",
    "scanLocalArchives",
]



# ------------------------------------------------------------------ #
# Source descriptors
# ------------------------------------------------------------------ #

def _checkSize(size: int | None) -> None:
    if size is not None and (isinstance(size, bool) or not isinstance(size, int) or size < 0):
        raise ValueError(f"Declared size must be a non-negative integer, got {size!r}")



@dataclass(frozen=True)
class LocalSource:
    path: Path
    sha256: str | None = None
    size: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))
        object.__setattr__(self, "sha256", normalizeSha256(self.sha256))
        _checkSize(self.size)

    def __str__(self) -> str:
        return str(self.path)



@dataclass(frozen=True)
class RemoteSource:
    url: str
    sha256: str | None = None
    size: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "sha256", normalizeSha256(self.sha256))
        _checkSize(self.size)

    def __str__(self) -> str:
        return self.url



SourceDescriptor = Union[LocalSource, RemoteSource]



@dataclass(frozen=True)
class ModPoolEntry:
    manifest: ModManifest
    source: SourceDescriptor

    @property
    def identity(self) -> ModIdentity:
        return self.manifest.identity

    @property
    def version(self) -> ModVersion:
        return self.manifest.version



# ------------------------------------------------------------------ #
# Pool
# ------------------------------------------------------------------ #

class ModPool:
    """
    Universe of candidate mods for one resolution.

    Versions of an identity are kept sorted, highest first. A second entry
    for an (identity, version) pair that is already present is ignored, so
    whatever is added first wins (local archives before remote indices).
    """

    def __init__(self, entries: Iterable[ModPoolEntry] = ()) -> None:
        self._byIdentity: dict[ModIdentity, list[ModPoolEntry]] = {}
        self.extend(entries)

    @classmethod
    def fromEntries(cls, *groups: Iterable[ModPoolEntry]) -> ModPool:
        pool = cls()
        for group in groups:
            pool.extend(group)
        return pool

    def add(self, entry: ModPoolEntry) -> bool:
        versions = self._byIdentity.setdefault(entry.identity, [])
        if any(existing.version == entry.version for existing in versions):
            logger.debug("Pool already has %s, ignoring entry from %s", entry.manifest.label, entry.source)
            return False
        versions.append(entry)
        versions.sort(key=lambda item: item.version, reverse=True)
        return True

    def extend(self, entries: Iterable[ModPoolEntry]) -> int:
        return sum(1 for entry in entries if self.add(entry))

    def versions(self, identity: ModIdentity) -> tuple[ModPoolEntry, ...]:
        return tuple(self._byIdentity.get(identity, ()))

    def availableVersions(self, identity: ModIdentity) -> tuple[ModVersion, ...]:
        return tuple(entry.version for entry in self._byIdentity.get(identity, ()))

    def get(self, identity: ModIdentity, version: ModVersion) -> ModPoolEntry | None:
        for entry in self._byIdentity.get(identity, ()):
            if entry.version == version:
                return entry
        return None

    def identities(self) -> list[ModIdentity]:
        return sorted(identity for identity, versions in self._byIdentity.items() if versions)

    def __iter__(self) -> Iterator[ModPoolEntry]:
        for identity in self.identities():
            yield from self._byIdentity[identity]

    def __contains__(self, identity: object) -> bool:
        return bool(self._byIdentity.get(identity))  # type: ignore[arg-type]

    def __len__(self) -> int:
        return sum(len(versions) for versions in self._byIdentity.values())



# ------------------------------------------------------------------ #
# Pool sources
# ------------------------------------------------------------------ #

def poolEntriesFromIndex(document: Any, *, baseUrl: str | None = None) -> list[ModPoolEntry]:
    """
    Entries of a remote package index: a JSON array of manifest objects, each
    extended with `url` (absolute, or relative to `baseUrl`) and optional
    `sha256` / `size`. Raises ManifestError on the first invalid entry.
    """
    if not isinstance(document, list):
        raise MalformedManifestError(f"package index must be an array, got {type(document).__name__}")

    entries: list[ModPoolEntry] = []
    for idx, raw in enumerate(document):
        if not isinstance(raw, dict):
            raise MalformedManifestError(f"index[{idx}] must be an object")
        url = raw.get("url") or raw.get("download_url")
        if not isinstance(url, str) or not url.strip():
            raise MalformedManifestError(f"index[{idx}] has no download url")
        if baseUrl:
            url = str(httpx.URL(baseUrl).join(url.strip()))
        manifest = manifestFromMapping(raw)
        try:
            source = RemoteSource(url.strip(), sha256=raw.get("sha256"), size=raw.get("size"))
        except ValueError as err:
            raise MalformedManifestError(f"index[{idx}] ({manifest.label}): {err}") from err
        entries.append(ModPoolEntry(manifest, source))
    return entries



_ARCHIVE_SUFFIXES = (".zip",)
_TAR_SUFFIXES = (".tar.gz", ".tgz")



def _isArchiveName(name: str, allowTarGz: bool) -> bool:
    lowered = name.lower()
    if any(lowered.endswith(suffix) for suffix in SIDECAR_SUFFIXES):
        return False
    if lowered.endswith(_ARCHIVE_SUFFIXES):
        return True
    return allowTarGz and lowered.endswith(_TAR_SUFFIXES)



def scanLocalArchives(
    directory: str | Path,
    *,
    strict: bool = False,
    allowTarGz: bool | None = None,
) -> list[ModPoolEntry]:
    """
    Pool entries for every archive in `directory` (not recursive), sorted by
    file name. The manifest comes from a sidecar file next to the archive,
    else from inside the archive. Each entry pins the archive's current size
    and SHA-256 so a file replaced between scan and install is detected.

    Archives without a manifest, or with an invalid one, are logged and
    skipped; with strict=True the error is raised instead.
    """
    root = Path(directory)
    if allowTarGz is None:
        allowTarGz = tarGzEnabled()
    if not root.is_dir():
        logger.debug("Local archive directory '%s' does not exist", root)
        return []

    entries: list[ModPoolEntry] = []
    for path in sorted(root.iterdir(), key=lambda item: item.name):
        if not path.is_file() or not _isArchiveName(path.name, allowTarGz):
            continue
        try:
            manifest = findSidecarManifest(path)
            if manifest is None:
                manifest = findManifestInArchive(path.read_bytes(), allowTarGz=allowTarGz)
            if manifest is None:
                raise MalformedManifestError(f"no manifest inside or next to '{path.name}'")
        except (ModkitError, OSError) as err:
            if strict:
                raise
            logger.warning("Skipping unreadable local archive '%s': %s", path, err)
            continue
        source = LocalSource(path, sha256=sha256File(path), size=path.stat().st_size)
        entries.append(ModPoolEntry(manifest, source))
        logger.debug("Found local archive %s at '%s'", manifest.label, path)
    return entries
