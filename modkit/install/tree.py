# modkit/install/tree.py
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path

from modkit.core.errors import TreeBusyError
from modkit.manifest.model import ModIdentity

logger = logging.getLogger(__name__)

__all__ = ["ModTree", "TreeLock"]



# ------------------------------------------------------------------ #
# Layout under a destination root
# ------------------------------------------------------------------ #
# mods/<namespace>-<name>/       # one slot per installed mod
# .modkit/ledger.json5           # installation ledger
# .modkit/enabledmods.json       # enabled-mods index for the game side
# .modkit/staging/               # extraction area, never live
# .modkit/trash/                 # previous slot contents during a commit
# .modkit/cache/                 # default archive cache
# .modkit/lock                   # one pipeline per tree
#
# staging/trash live on the same filesystem as mods/ so commits are renames.

@dataclass(frozen=True)
class ModTree:
    root: Path

    @classmethod
    def at(cls, root: str | os.PathLike[str]) -> ModTree:
        return cls(Path(root).resolve())

    @property
    def modsRoot(self) -> Path:
        return self.root / "mods"

    @property
    def stateDir(self) -> Path:
        return self.root / ".modkit"

    @property
    def ledgerPath(self) -> Path:
        return self.stateDir / "ledger.json5"

    @property
    def enabledIndexPath(self) -> Path:
        return self.stateDir / "enabledmods.json"

    @property
    def stagingRoot(self) -> Path:
        return self.stateDir / "staging"

    @property
    def trashRoot(self) -> Path:
        return self.stateDir / "trash"

    @property
    def cacheDir(self) -> Path:
        return self.stateDir / "cache"

    @property
    def lockPath(self) -> Path:
        return self.stateDir / "lock"

    def slotFor(self, identity: ModIdentity) -> Path:
        return self.modsRoot / identity.slotName

    def ensure(self) -> None:
        for path in (self.modsRoot, self.stagingRoot, self.trashRoot):
            path.mkdir(parents=True, exist_ok=True)



# ------------------------------------------------------------------ #
# Tree lock
# ------------------------------------------------------------------ #

_HELD_LOCK = threading.Lock()
_HELD_ROOTS: set[Path] = set()



class TreeLock:
    """
    Advisory lock scoped to one destination root.

    Inside the process a registry of held roots rejects a second pipeline;
    across processes an exclusively created lock file does the same. Both
    fail fast with TreeBusyError instead of waiting.

    A lock file left behind by a crashed process must be removed by hand;
    its content names the pid that created it.
    """

    def __init__(self, tree: ModTree) -> None:
        self.tree = tree
        self._held = False

    def acquire(self) -> None:
        root = self.tree.root
        with _HELD_LOCK:
            if root in _HELD_ROOTS:
                raise TreeBusyError(root)
            _HELD_ROOTS.add(root)
        try:
            self.tree.stateDir.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.tree.lockPath, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as err:
            with _HELD_LOCK:
                _HELD_ROOTS.discard(root)
            raise TreeBusyError(root) from err
        except BaseException:
            with _HELD_LOCK:
                _HELD_ROOTS.discard(root)
            raise
        with os.fdopen(fd, "w", encoding="utf-8") as fl:
            fl.write(f"{os.getpid()}\n")
        self._held = True
        logger.debug("Acquired tree lock for '%s'", root)

    def release(self) -> None:
        if not self._held:
            return
        root = self.tree.root
        try:
            self.tree.lockPath.unlink(missing_ok=True)
        finally:
            with _HELD_LOCK:
                _HELD_ROOTS.discard(root)
            self._held = False
            logger.debug("Released tree lock for '%s'", root)

    def __enter__(self) -> TreeLock:
        self.acquire()
        return self

    def __exit__(self, excType, exc, tb) -> None:
        self.release()
