# modkit/install/archive.py
from __future__ import annotations

import io
import logging
import re
import shutil
import stat
import tarfile
import zipfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath

from modkit.config.settings import settingsBool
from modkit.core.cancel import CancelToken
from modkit.install.errors import (
    CorruptArchiveError,
    InstallCancelledError,
    UnsafePathError,
    UnsupportedArchiveError,
)

logger = logging.getLogger(__name__)

__all__ = [
    "ArchiveFormat",
    "ArchiveMember",
    "detectFormat",
    "tarGzEnabled",
    "normalizeMemberPath",
    "listMembers",
    "readMember",
    "extractArchive",
]



_DRIVE_RE = re.compile(r"^[A-Za-z]:")

_ZIP_MAGIC = (b"PK\x03\x04", b"PK\x05\x06")
_GZIP_MAGIC = b"\x1f\x8b"



class ArchiveFormat(str, Enum):
    ZIP = "zip"
    TAR_GZ = "tar.gz"



@dataclass(frozen=True)
class ArchiveMember:
    # Normalized POSIX path relative to the archive root, never empty
    path: str
    isDir: bool
    size: int



def tarGzEnabled() -> bool:
    """Runtime capability flag for the tar+gzip format family."""
    return settingsBool("archives.tarGzEnabled", False)



def detectFormat(data: bytes, *, allowTarGz: bool | None = None) -> ArchiveFormat:
    """Detect the container format from magic bytes."""
    if allowTarGz is None:
        allowTarGz = tarGzEnabled()
    if data[:4] in _ZIP_MAGIC:
        return ArchiveFormat.ZIP
    if data[:2] == _GZIP_MAGIC:
        if not allowTarGz:
            raise UnsupportedArchiveError("tar.gz archives are disabled (archives.tarGzEnabled)")
        return ArchiveFormat.TAR_GZ
    raise UnsupportedArchiveError("unknown container format (expected zip or tar.gz)")



def normalizeMemberPath(name: str) -> str:
    """
    Returns the member name as a clean relative POSIX path ("" for the archive root).

    Raises UnsafePathError for absolute paths, drive letters, NUL bytes and
    any ".." segment. Backslashes count as separators so Windows-made
    archives cannot smuggle "..\\" past the check.
    """
    if "\x00" in name:
        raise UnsafePathError(name, "NUL byte in entry name")
    unified = name.replace("\\", "/")
    if unified.startswith("/") or _DRIVE_RE.match(unified):
        raise UnsafePathError(name, "absolute path")
    parts: list[str] = []
    for part in unified.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise UnsafePathError(name, "parent directory segment")
        parts.append(part)
    return "/".join(parts)



# ------------------------------------------------------------------ #
# Format specific member listing
# ------------------------------------------------------------------ #

def _zipIsSymlink(info: zipfile.ZipInfo) -> bool:
    mode = (info.external_attr >> 16) & 0xFFFF
    return stat.S_ISLNK(mode)



def _zipMembers(zf: zipfile.ZipFile) -> list[tuple[ArchiveMember, zipfile.ZipInfo]]:
    out: list[tuple[ArchiveMember, zipfile.ZipInfo]] = []
    for info in zf.infolist():
        path = normalizeMemberPath(info.filename)
        if _zipIsSymlink(info):
            raise UnsafePathError(info.filename, "symbolic links are not allowed")
        if not path:
            continue
        out.append((ArchiveMember(path, info.is_dir(), info.file_size), info))
    return out



def _tarMembers(tf: tarfile.TarFile) -> list[tuple[ArchiveMember, tarfile.TarInfo]]:
    out: list[tuple[ArchiveMember, tarfile.TarInfo]] = []
    for info in tf.getmembers():
        path = normalizeMemberPath(info.name)
        if info.issym() or info.islnk():
            raise UnsafePathError(info.name, "links are not allowed")
        if not (info.isfile() or info.isdir()):
            raise UnsafePathError(info.name, "special files are not allowed")
        if not path:
            continue
        out.append((ArchiveMember(path, info.isdir(), info.size), info))
    return out



@contextmanager
def _openArchive(data: bytes, fmt: ArchiveFormat) -> Iterator[zipfile.ZipFile | tarfile.TarFile]:
    try:
        if fmt is ArchiveFormat.ZIP:
            handle: zipfile.ZipFile | tarfile.TarFile = zipfile.ZipFile(io.BytesIO(data))
        else:
            handle = tarfile.open(fileobj=io.BytesIO(data), mode="r:gz")
    except (zipfile.BadZipFile, tarfile.TarError, OSError, EOFError) as err:
        raise CorruptArchiveError(str(err)) from err
    with handle:
        yield handle



def _members(handle: zipfile.ZipFile | tarfile.TarFile) -> list[tuple[ArchiveMember, object]]:
    try:
        if isinstance(handle, zipfile.ZipFile):
            return list(_zipMembers(handle))
        return list(_tarMembers(handle))
    except (zipfile.BadZipFile, tarfile.TarError, OSError, EOFError) as err:
        raise CorruptArchiveError(str(err)) from err



def listMembers(data: bytes, *, allowTarGz: bool | None = None) -> list[ArchiveMember]:
    """Validated member list. Raises UnsafePathError before anything is written."""
    fmt = detectFormat(data, allowTarGz=allowTarGz)
    with _openArchive(data, fmt) as handle:
        return [member for member, _info in _members(handle)]



def readMember(data: bytes, path: str, *, allowTarGz: bool | None = None) -> bytes | None:
    """Returns the content of a file member by normalized path, or None when absent."""
    fmt = detectFormat(data, allowTarGz=allowTarGz)
    with _openArchive(data, fmt) as handle:
        for member, info in _members(handle):
            if member.path != path or member.isDir:
                continue
            try:
                if isinstance(handle, zipfile.ZipFile):
                    return handle.read(info)  # type: ignore[arg-type]
                fileObj = handle.extractfile(info)  # type: ignore[arg-type]
                return fileObj.read() if fileObj is not None else None
            except (zipfile.BadZipFile, tarfile.TarError, OSError, EOFError) as err:
                raise CorruptArchiveError(f"{path}: {err}") from err
    return None



# ------------------------------------------------------------------ #
# Extraction
# ------------------------------------------------------------------ #

def extractArchive(
    data: bytes,
    destination: Path,
    *,
    allowTarGz: bool | None = None,
    cancel: CancelToken | None = None,
) -> list[ArchiveMember]:
    """
    Extract `data` into `destination` (which must exist and be empty).

    Every member is validated first; an unsafe entry aborts before the first
    byte is written. Returns the extracted members.
    """
    fmt = detectFormat(data, allowTarGz=allowTarGz)
    root = destination.resolve()
    with _openArchive(data, fmt) as handle:
        members = _members(handle)

        # Second line of defence: resolved target must stay under root
        for member, _info in members:
            target = (root / member.path).resolve()
            if not target.is_relative_to(root):
                raise UnsafePathError(member.path)

        logger.debug("Extracting %d %s members into '%s'", len(members), fmt.value, root)
        for member, info in members:
            if cancel is not None and cancel.cancelled:
                raise InstallCancelledError(cancel.reason)
            target = root.joinpath(*PurePosixPath(member.path).parts)
            if member.isDir:
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                if isinstance(handle, zipfile.ZipFile):
                    source = handle.open(info)  # type: ignore[arg-type]
                else:
                    source = handle.extractfile(info)  # type: ignore[arg-type]
                    if source is None:
                        raise CorruptArchiveError(f"{member.path}: no data")
                with source, target.open("wb") as out:
                    shutil.copyfileobj(source, out)
            except (zipfile.BadZipFile, tarfile.TarError, EOFError) as err:
                raise CorruptArchiveError(f"{member.path}: {err}") from err
    return [member for member, _info in members]
