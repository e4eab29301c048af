# modkit/install/placement.py
from __future__ import annotations

import logging
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from modkit.core.cancel import CancelToken
from modkit.core.errors import ModkitError
from modkit.install.archive import extractArchive
from modkit.install.errors import (
    CommitError,
    InstallCancelledError,
    LayoutMismatchError,
    SlotOccupiedError,
    UnsafePathError,
)
from modkit.install.filesystem import CrossDeviceError, LocalFileSystem, listFiles
from modkit.install.tree import ModTree
from modkit.ledger.ledger import LedgerRecord
from modkit.manifest.model import ModIdentity, ModManifest

logger = logging.getLogger(__name__)

__all__ = ["StagedMod", "PlacementEngine"]



@dataclass(frozen=True)
class StagedMod:
    identity: ModIdentity
    # Private directory under the staging root; removed by discard()
    workDir: Path
    # Directory whose contents become the slot
    modRoot: Path
    # POSIX paths relative to modRoot
    files: tuple[str, ...]



class PlacementEngine:
    """
    Two-phase placement of one mod archive into its slot.

    stage() extracts into a private directory under `.modkit/staging` and
    checks the layout; nothing under `mods/` is touched and the phase can be
    cancelled. commit() swaps the staged tree into the slot. Once commit()
    starts it either finishes or puts the slot back exactly as it was.
    """

    def __init__(self, tree: ModTree, fs: LocalFileSystem | None = None, *, allowTarGz: bool | None = None) -> None:
        self.tree = tree
        self.fs = fs or LocalFileSystem()
        self.allowTarGz = allowTarGz

    # ------------------------------------------------------------------ #
    # Stage
    # ------------------------------------------------------------------ #

    def stage(self, data: bytes, manifest: ModManifest, *, cancel: CancelToken | None = None) -> StagedMod:
        self.tree.ensure()
        workDir = Path(tempfile.mkdtemp(prefix=f"{manifest.identity.slotName}-", dir=self.tree.stagingRoot))
        try:
            extractDir = workDir / "extract"
            extractDir.mkdir()
            extractArchive(data, extractDir, allowTarGz=self.allowTarGz, cancel=cancel)
            modRoot = self._checkLayout(extractDir, manifest.layout)
            files = tuple(listFiles(modRoot))
        except BaseException:
            self.fs.removeTree(workDir)
            raise
        logger.debug("Staged %s: %d file(s) in '%s'", manifest.label, len(files), workDir)
        return StagedMod(manifest.identity, workDir, modRoot, files)

    def _checkLayout(self, extractDir: Path, layout: tuple[str, ...] | None) -> Path:
        entries = sorted(extractDir.iterdir(), key=lambda entry: entry.name)
        dirs = tuple(entry.name for entry in entries if entry.is_dir())
        found = tuple(entry.name for entry in entries)

        if layout is not None:
            missing = [name for name in layout if name not in dirs]
            if missing:
                raise LayoutMismatchError(layout, found, f"missing declared director{'y' if len(missing) == 1 else 'ies'} {missing}")
            unexpected = [name for name in dirs if name not in layout]
            if unexpected:
                raise LayoutMismatchError(layout, found, f"undeclared top-level director{'y' if len(unexpected) == 1 else 'ies'} {unexpected}")
            return extractDir

        if len(entries) != 1:
            raise LayoutMismatchError(None, found, f"expected exactly one top-level directory, found {len(entries)} entries")
        if not entries[0].is_dir():
            raise LayoutMismatchError(None, found, f"top-level entry {entries[0].name!r} is not a directory")
        return entries[0]

    def discard(self, staged: StagedMod) -> None:
        try:
            self.fs.removeTree(staged.workDir)
        except OSError as err:
            logger.warning("Could not clean staging directory '%s': %s", staged.workDir, err)

    # ------------------------------------------------------------------ #
    # Commit
    # ------------------------------------------------------------------ #

    def commit(
        self,
        staged: StagedMod,
        manifest: ModManifest,
        *,
        previous: LedgerRecord | None = None,
        onPlaced: Callable[[LedgerRecord], LedgerRecord] | None = None,
    ) -> LedgerRecord:
        """
        Move the staged tree into the slot and return the new ledger record.

        An existing slot is renamed into the trash first. Files in it that
        `previous` does not own (user configs, generated caches) are carried
        over into the new slot unless the new archive ships the same path.
        Files the previous version owned but the new one does not are dropped
        with the backup.

        `onPlaced` receives the record while the backup still exists (the
        pipeline writes the ledger there); whatever it returns is the result.
        Any failure up to and including `onPlaced` restores the backup.
        Filesystem failures raise CommitError, modkit errors from `onPlaced`
        propagate unchanged.
        """
        slot = self.tree.slotFor(manifest.identity)
        if slot.exists() and previous is None:
            raise SlotOccupiedError(slot)

        prefix = manifest.identity.slotName
        record = LedgerRecord(
            identity=manifest.identity,
            version=manifest.version,
            enabled=True,
            files=tuple(sorted(f"{prefix}/{path}" for path in staged.files)),
            title=manifest.title,
            dependencies=manifest.dependencies,
            conflicts=manifest.conflicts,
            installedAt=time.time(),
        )

        self.tree.ensure()
        backup: Path | None = None
        placed = False
        try:
            if slot.exists():
                backup = Path(tempfile.mkdtemp(prefix=f"{prefix}-", dir=self.tree.trashRoot)) / "slot"
                self.fs.rename(slot, backup)
            self._place(staged.modRoot, slot)
            placed = True
            if backup is not None and previous is not None:
                self._carryUnowned(backup, slot, previous)
            if onPlaced is not None:
                record = onPlaced(record)
        except ModkitError:
            self._rollback(slot, backup, placed)
            raise
        except Exception as err:
            self._rollback(slot, backup, placed)
            raise CommitError(slot, str(err)) from err

        if backup is not None:
            try:
                self.fs.removeTree(backup.parent)
            except OSError as err:
                logger.warning("Could not remove backup '%s': %s", backup.parent, err)

        if previous is not None:
            obsolete = set(previous.files) - set(record.files)
            if obsolete:
                logger.info("Removed %d file(s) no longer shipped by %s", len(obsolete), manifest.label)

        logger.info("Committed %s into '%s' (%d file(s))", manifest.label, slot, len(record.files))
        return record

    def _place(self, source: Path, slot: Path) -> None:
        try:
            self.fs.rename(source, slot)
            return
        except CrossDeviceError:
            logger.debug("Staging and mods root are on different devices, copying into '%s'", slot)

        # Copy next to the slot, verify, then a same-device rename makes it live
        incoming = slot.with_name(f"{slot.name}.incoming-{os.getpid()}")
        self.fs.removeTree(incoming)
        try:
            self.fs.copyTree(source, incoming)
            expected = listFiles(source)
            copied = listFiles(incoming)
            if copied != expected:
                raise OSError(f"copy verification failed: {len(copied)} of {len(expected)} file(s) present")
            self.fs.rename(incoming, slot)
        except BaseException:
            self.fs.removeTree(incoming)
            raise

    def _carryUnowned(self, backup: Path, slot: Path, previous: LedgerRecord) -> None:
        prefix = f"{previous.identity.slotName}/"
        owned = {path[len(prefix):] for path in previous.files if path.startswith(prefix)}
        for rel in listFiles(backup):
            if rel in owned:
                continue
            target = slot.joinpath(*PurePosixPath(rel).parts)
            if target.exists():
                # The new archive ships this path now; the archive wins
                continue
            self.fs.copyFile(backup.joinpath(*PurePosixPath(rel).parts), target)
            logger.debug("Kept unowned file '%s' in %s", rel, slot.name)

    def _rollback(self, slot: Path, backup: Path | None, placed: bool) -> None:
        if placed:
            self.fs.removeTree(slot)
        if backup is not None and backup.exists():
            self.fs.rename(backup, slot)
            self.fs.removeTree(backup.parent)
        logger.warning("Rolled back commit into '%s'", slot)

    # ------------------------------------------------------------------ #
    # Combined
    # ------------------------------------------------------------------ #

    def stageAndCommit(
        self,
        data: bytes,
        manifest: ModManifest,
        *,
        previous: LedgerRecord | None = None,
        cancel: CancelToken | None = None,
    ) -> LedgerRecord:
        staged = self.stage(data, manifest, cancel=cancel)
        try:
            if cancel is not None and cancel.cancelled:
                raise InstallCancelledError(cancel.reason)
            return self.commit(staged, manifest, previous=previous)
        finally:
            self.discard(staged)

    # ------------------------------------------------------------------ #
    # Removal
    # ------------------------------------------------------------------ #

    def removeOwned(self, record: LedgerRecord) -> int:
        """
        Delete exactly the files `record` owns, then prune empty directories
        of its slot. Unowned files (and their directories) survive. Returns
        the number of files deleted.
        """
        slot = self.tree.slotFor(record.identity)
        slotRoot = slot.resolve()
        targets: list[Path] = []
        # Validate every path before the first delete
        for rel in record.files:
            target = (self.tree.modsRoot / rel).resolve()
            if target == slotRoot or not target.is_relative_to(slotRoot):
                raise UnsafePathError(rel, "ledger path outside the mod's slot")
            targets.append(target)

        removed = 0
        for target in targets:
            if target.is_file():
                self.fs.removeFile(target)
                removed += 1
        self.fs.removeEmptyDirs(slot)
        logger.info("Removed %d file(s) of %s", removed, record.label)
        return removed

    # ------------------------------------------------------------------ #
    # Recovery
    # ------------------------------------------------------------------ #

    def recover(self) -> None:
        """
        Clean up after a crashed process: a trash backup whose slot is gone
        is put back, everything else in trash and staging is removed.
        """
        for root in (self.tree.trashRoot, self.tree.stagingRoot):
            if not root.is_dir():
                continue
            for entry in sorted(root.iterdir()):
                backup = entry / "slot"
                if root == self.tree.trashRoot and backup.is_dir():
                    slotName = entry.name.rsplit("-", 1)[0]
                    slot = self.tree.modsRoot / slotName
                    if not slot.exists():
                        self.fs.rename(backup, slot)
                        logger.warning("Restored interrupted commit of '%s' from trash", slotName)
                if entry.is_dir():
                    self.fs.removeTree(entry)
                else:
                    self.fs.removeFile(entry)
