# modkit/install/filesystem.py
from __future__ import annotations

import errno
import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

__all__ = ["LocalFileSystem", "CrossDeviceError", "listFiles"]



class CrossDeviceError(OSError):
    """rename() cannot cross filesystems; callers fall back to copy."""



def listFiles(root: Path) -> list[str]:
    """Sorted POSIX paths of every regular file under `root`, relative to `root`."""
    out: list[str] = []
    for dirPath, _dirNames, fileNames in os.walk(root):
        base = Path(dirPath)
        for fileName in fileNames:
            out.append((base / fileName).relative_to(root).as_posix())
    out.sort()
    return out



class LocalFileSystem:
    """
    Filesystem primitives used by the placement engine.

    Kept as an object so tests (and embedders with unusual storage) can swap
    single operations, e.g. to simulate a failure in the middle of a commit.
    """

    def rename(self, source: Path, target: Path) -> None:
        """Atomic same-filesystem rename. Raises CrossDeviceError across devices."""
        try:
            os.rename(source, target)
        except OSError as err:
            if err.errno == errno.EXDEV:
                raise CrossDeviceError(err.errno, err.strerror, str(source)) from err
            raise

    def copyTree(self, source: Path, target: Path) -> None:
        shutil.copytree(source, target, symlinks=False)

    def copyFile(self, source: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)

    def removeTree(self, path: Path) -> None:
        if path.exists() or path.is_symlink():
            shutil.rmtree(path)

    def removeFile(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    def removeEmptyDirs(self, root: Path, *, keepRoot: bool = False) -> None:
        """Remove empty directories bottom-up under (and including, unless keepRoot) `root`."""
        if not root.is_dir():
            return
        for dirPath, _dirNames, _fileNames in os.walk(root, topdown=False):
            path = Path(dirPath)
            if keepRoot and path == root:
                continue
            try:
                path.rmdir()
            except OSError:
                # Not empty: something the ledger does not own lives here
                continue

