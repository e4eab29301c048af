# modkit/manifest/discovery.py
from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

from modkit.install.archive import listMembers, readMember
from modkit.manifest.model import ModManifest
from modkit.manifest.parser import MANIFEST_NAMES, parseManifest

logger = logging.getLogger(__name__)

__all__ = ["SIDECAR_SUFFIXES", "findManifestInArchive", "findSidecarManifest", "sidecarPathsFor"]



SIDECAR_SUFFIXES: tuple[str, ...] = (".manifest.json5", ".manifest.json")



def findManifestInArchive(data: bytes, *, allowTarGz: bool | None = None) -> ModManifest | None:
    """
    Look for a manifest at the archive's top level, then inside its single
    top-level directory. Returns None when the archive carries none.

    A manifest that is present but invalid raises ManifestError; it is never
    skipped in favour of another candidate.
    """
    members = listMembers(data, allowTarGz=allowTarGz)
    filePaths = {member.path for member in members if not member.isDir}

    for name in MANIFEST_NAMES:
        if name in filePaths:
            raw = readMember(data, name, allowTarGz=allowTarGz)
            if raw is not None:
                return parseManifest(raw)

    topLevel = {PurePosixPath(member.path).parts[0] for member in members}
    if len(topLevel) != 1:
        return None
    (root,) = topLevel
    for name in MANIFEST_NAMES:
        candidate = f"{root}/{name}"
        if candidate in filePaths:
            raw = readMember(data, candidate, allowTarGz=allowTarGz)
            if raw is not None:
                return parseManifest(raw)
    return None



def sidecarPathsFor(archivePath: Path) -> list[Path]:
    return [archivePath.with_name(archivePath.name + suffix) for suffix in SIDECAR_SUFFIXES]



def findSidecarManifest(archivePath: Path) -> ModManifest | None:
    """`Mod.zip` -> `Mod.zip.manifest.json5` or `Mod.zip.manifest.json` next to it."""
    for candidate in sidecarPathsFor(archivePath):
        if candidate.is_file():
            logger.debug("Using sidecar manifest '%s'", candidate)
            return parseManifest(candidate.read_bytes())
    return None
