# modkit/ledger/ledger.py
from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import json5

from modkit.config.settings import settings, settingsBool
from modkit.core.errors import ModkitError
from modkit.manifest.model import ConflictSpec, DependencySpec, ModIdentity
from modkit.manifest.parser import relationToMapping
from modkit.manifest.version import ModVersion, parseModVersion, parseVersionConstraint

logger = logging.getLogger(__name__)

__all__ = [
    "LEDGER_SCHEMA_VERSION",
    "LedgerRecord",
    "LedgerError",
    "UnknownModError",
    "StillRequiredError",
    "ConflictOnEnableError",
    "MissingDependencyError",
    "OwnershipOverlapError",
    "ProtectedModError",
    "CorruptLedgerError",
    "InstallationLedger",
]



LEDGER_SCHEMA_VERSION = 1



# ------------------------------------------------------------------ #
# Record
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class LedgerRecord:
    """
    One installed mod as the ledger knows it.

    `files` are POSIX paths relative to the mods root, always starting with
    the mod's slot name, sorted. Dependencies and conflicts are copied from
    the manifest at install time so ledger invariants can be checked without
    re-reading archives.
    """
    identity: ModIdentity
    version: ModVersion
    enabled: bool = True
    files: tuple[str, ...] = ()
    title: str = ""
    dependencies: tuple[DependencySpec, ...] = ()
    conflicts: tuple[ConflictSpec, ...] = ()
    installedAt: float = field(default=0.0, compare=False)

    @property
    def label(self) -> str:
        return f"{self.identity}@{self.version}"

    def withEnabled(self, enabled: bool) -> LedgerRecord:
        return replace(self, enabled=enabled)

    def conflictsWith(self, identity: ModIdentity, version: ModVersion) -> bool:
        return any(spec.matches(identity, version) for spec in self.conflicts)

    def dependsOn(self, identity: ModIdentity) -> bool:
        return any(dep.target == identity for dep in self.dependencies)

    def toMapping(self) -> dict[str, Any]:
        return {
            "namespace": self.identity.namespace,
            "name": self.identity.name,
            "version": str(self.version),
            "enabled": self.enabled,
            "title": self.title,
            "installedAt": self.installedAt,
            "dependencies": [relationToMapping(dep.target, dep.constraint) for dep in self.dependencies],
            "conflicts": [relationToMapping(spec.target, spec.constraint) for spec in self.conflicts],
            "files": list(self.files),
        }

    @classmethod
    def fromMapping(cls, raw: Any) -> LedgerRecord:
        """Raises ValueError/KeyError/TypeError on malformed input; the ledger wraps them."""
        if not isinstance(raw, dict):
            raise TypeError(f"ledger entry must be an object, got {type(raw).__name__}")
        identity = ModIdentity(raw["namespace"], raw["name"])

        def relations(key: str) -> list[tuple[ModIdentity, Any]]:
            out = []
            for entry in raw.get(key) or []:
                target = ModIdentity(entry["namespace"], entry["name"])
                out.append((target, parseVersionConstraint(entry.get("constraint"))))
            return out

        files = raw.get("files") or []
        if not all(isinstance(path, str) for path in files):
            raise TypeError("files must be a list of strings")
        return cls(
            identity=identity,
            version=parseModVersion(raw["version"]),
            enabled=bool(raw.get("enabled", True)),
            files=tuple(sorted(files)),
            title=str(raw.get("title") or identity.name),
            dependencies=tuple(DependencySpec(target, constraint) for target, constraint in relations("dependencies")),
            conflicts=tuple(ConflictSpec(target, constraint) for target, constraint in relations("conflicts")),
            installedAt=float(raw.get("installedAt") or 0.0),
        )



# ------------------------------------------------------------------ #
# Errors
# ------------------------------------------------------------------ #

class LedgerError(ModkitError):
    """Ledger invariant would be violated. Surfaced for the caller to decide (force, cascade, ...)."""



class UnknownModError(LedgerError, KeyError):
    def __init__(self, identity: ModIdentity) -> None:
        super().__init__(f"Mod {identity} is not installed")
        self.identity = identity

    def __str__(self) -> str:
        return str(self.args[0])



class StillRequiredError(LedgerError):
    def __init__(self, identity: ModIdentity, dependents: Iterable[ModIdentity]) -> None:
        self.identity = identity
        self.dependents: tuple[ModIdentity, ...] = tuple(sorted(dependents))
        super().__init__(f"Mod {identity} is still required by: {', '.join(str(dep) for dep in self.dependents)}")



class ConflictOnEnableError(LedgerError):
    def __init__(self, identity: ModIdentity, other: ModIdentity) -> None:
        super().__init__(f"Enabling {identity} conflicts with enabled mod {other}")
        self.identity = identity
        self.other = other



class MissingDependencyError(LedgerError):
    def __init__(self, identity: ModIdentity, dependency: DependencySpec) -> None:
        super().__init__(f"Mod {identity} requires {dependency}, which is not enabled")
        self.identity = identity
        self.dependency = dependency



class OwnershipOverlapError(LedgerError):
    def __init__(self, identity: ModIdentity, other: ModIdentity, paths: Iterable[str]) -> None:
        self.identity = identity
        self.other = other
        self.paths: tuple[str, ...] = tuple(sorted(paths))
        preview = ", ".join(self.paths[:5]) + (", ..." if len(self.paths) > 5 else "")
        super().__init__(f"Mod {identity} would own files already owned by {other}: {preview}")



class ProtectedModError(LedgerError):
    def __init__(self, identity: ModIdentity, action: str) -> None:
        super().__init__(f"Mod {identity} is protected and cannot be {action} without force")
        self.identity = identity
        self.action = action



class CorruptLedgerError(LedgerError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Ledger file '{path}' is unreadable: {reason}")
        self.path = path
        self.reason = reason



# ------------------------------------------------------------------ #
# Ledger
# ------------------------------------------------------------------ #

def _protectedFromSettings() -> frozenset[ModIdentity]:
    out: set[ModIdentity] = set()
    for raw in settings("ledger.protectedMods", []) or []:
        try:
            out.add(ModIdentity.parse(str(raw)))
        except ValueError as err:
            logger.warning("Ignoring invalid entry %r in ledger.protectedMods: %s", raw, err)
    return frozenset(out)



class InstallationLedger:
    """
    Durable mapping ModIdentity -> LedgerRecord.

    The ledger is an explicit object passed to whoever needs it; there is no
    module-level instance. Every mutation holds the lock, re-checks the
    invariants against the current state and rewrites the file atomically.
    Reads return snapshots (records are frozen).
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        *,
        enabledIndexPath: str | os.PathLike[str] | None = None,
        protected: Iterable[ModIdentity] | None = None,
        writeEnabledIndex: bool | None = None,
    ) -> None:
        self.path = Path(path)
        self.enabledIndexPath = Path(enabledIndexPath) if enabledIndexPath is not None else self.path.with_name("enabledmods.json")
        self.protected: frozenset[ModIdentity] = frozenset(protected) if protected is not None else _protectedFromSettings()
        if writeEnabledIndex is None:
            writeEnabledIndex = settingsBool("ledger.writeEnabledIndex", True)
        self.writeEnabledIndex = writeEnabledIndex
        self._lock = threading.RLock()
        self._records: dict[ModIdentity, LedgerRecord] = {}
        self._load()

    # ----- Persistence ----- #

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug("No ledger at '%s', starting empty", self.path)
            return
        try:
            raw = json5.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as err:
            raise CorruptLedgerError(self.path, str(err)) from err
        if not isinstance(raw, dict) or not isinstance(raw.get("mods", []), list):
            raise CorruptLedgerError(self.path, "expected an object with a 'mods' list")

        schemaVersion = raw.get("schemaVersion", LEDGER_SCHEMA_VERSION)
        if schemaVersion != LEDGER_SCHEMA_VERSION:
            raise CorruptLedgerError(self.path, f"unsupported schemaVersion {schemaVersion!r}")

        for idx, entry in enumerate(raw.get("mods", [])):
            try:
                record = LedgerRecord.fromMapping(entry)
            except (KeyError, TypeError, ValueError) as err:
                raise CorruptLedgerError(self.path, f"mods[{idx}]: {err}") from err
            if record.identity in self._records:
                raise CorruptLedgerError(self.path, f"duplicate entry for {record.identity}")
            self._records[record.identity] = record
        logger.debug("Loaded %d ledger record(s) from '%s'", len(self._records), self.path)

    def _write(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmpPath = path.with_name(path.name + ".tmp")
        try:
            with open(tmpPath, "w", encoding="utf-8") as fl:
                fl.write(text)
                fl.flush()
                os.fsync(fl.fileno())
            os.replace(tmpPath, path)
        except OSError:
            tmpPath.unlink(missing_ok=True)
            raise

    def _apply(self, records: dict[ModIdentity, LedgerRecord]) -> None:
        """Persist `records`, then make them the in-memory state. A failed write leaves both untouched."""
        ordered = [records[identity] for identity in sorted(records)]
        doc = {
            "schemaVersion": LEDGER_SCHEMA_VERSION,
            "mods": [record.toMapping() for record in ordered],
        }
        self._write(self.path, json5.dumps(doc, indent=2, quote_keys=True, trailing_commas=False, ensure_ascii=False) + "\n")
        self._records = records
        # The index is derived from the ledger file, which is already current
        if self.writeEnabledIndex:
            index = {str(record.identity): record.enabled for record in ordered}
            self._write(self.enabledIndexPath, json.dumps(index, indent=2) + "\n")

    def _sorted(self) -> list[LedgerRecord]:
        return [self._records[identity] for identity in sorted(self._records)]

    # ----- Reads ----- #

    def get(self, identity: ModIdentity) -> LedgerRecord | None:
        with self._lock:
            return self._records.get(identity)

    def require(self, identity: ModIdentity) -> LedgerRecord:
        record = self.get(identity)
        if record is None:
            raise UnknownModError(identity)
        return record

    def list(self) -> tuple[LedgerRecord, ...]:
        with self._lock:
            return tuple(self._sorted())

    def enabled(self) -> tuple[LedgerRecord, ...]:
        return tuple(record for record in self.list() if record.enabled)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def isProtected(self, identity: ModIdentity) -> bool:
        return identity in self.protected

    # ----- Invariant helpers ----- #

    def _enabledDependents(self, identity: ModIdentity) -> list[ModIdentity]:
        return sorted(
            record.identity
            for record in self._records.values()
            if record.enabled and record.identity != identity and record.dependsOn(identity)
        )

    def _checkEnable(self, record: LedgerRecord) -> None:
        for other in self._sorted():
            if not other.enabled or other.identity == record.identity:
                continue
            if record.conflictsWith(other.identity, other.version) or other.conflictsWith(record.identity, record.version):
                raise ConflictOnEnableError(record.identity, other.identity)
        for dep in record.dependencies:
            provider = self._records.get(dep.target)
            if provider is None or not provider.enabled or not dep.constraint.isSatisfiedBy(provider.version):
                raise MissingDependencyError(record.identity, dep)

    def _checkOwnership(self, record: LedgerRecord) -> None:
        owned = set(record.files)
        for other in self._sorted():
            if other.identity == record.identity:
                continue
            overlap = owned.intersection(other.files)
            if overlap:
                raise OwnershipOverlapError(record.identity, other.identity, overlap)

    # ----- Mutations ----- #

    def upsert(self, record: LedgerRecord) -> LedgerRecord:
        """
        Insert or replace the record for `record.identity`.

        Only file ownership is enforced here; dependency and conflict checks
        belong to the resolver (install) and to setEnabled (toggling).
        """
        if not record.installedAt:
            record = replace(record, installedAt=time.time())
        record = replace(record, files=tuple(sorted(set(record.files))))
        with self._lock:
            self._checkOwnership(record)
            previous = self._records.get(record.identity)
            self._apply({**self._records, record.identity: record})
        if previous is None:
            logger.info("Ledger: recorded %s (%d file(s))", record.label, len(record.files))
        else:
            logger.info("Ledger: replaced %s with %s (%d file(s))", previous.label, record.label, len(record.files))
        return record

    def setEnabled(self, identity: ModIdentity, enabled: bool, *, force: bool = False) -> LedgerRecord:
        """
        Toggle the enabled flag.

        Enabling checks conflicts against every other enabled record (both
        directions) and that each dependency is provided by an enabled record.
        Disabling refuses while an enabled mod still depends on `identity`.
        `force` only overrides the protected-mod guard.
        """
        with self._lock:
            record = self._records.get(identity)
            if record is None:
                raise UnknownModError(identity)
            if record.enabled == enabled:
                return record
            if enabled:
                self._checkEnable(record)
            else:
                if identity in self.protected and not force:
                    raise ProtectedModError(identity, "disabled")
                dependents = self._enabledDependents(identity)
                if dependents:
                    raise StillRequiredError(identity, dependents)
            updated = record.withEnabled(enabled)
            self._apply({**self._records, identity: updated})
        logger.info("Ledger: %s %s", "enabled" if enabled else "disabled", updated.label)
        return updated

    def removalOrder(self, identity: ModIdentity, *, cascade: bool = False, force: bool = False) -> list[LedgerRecord]:
        """
        Records to remove for uninstalling `identity`, in removal order.

        Without cascade, enabled dependents raise StillRequiredError. With
        cascade the transitive enabled dependents come first, deepest first
        (longest dependency distance from `identity`), ties in identity order;
        `identity` itself is last. Protected mods in the set raise
        ProtectedModError unless `force`.
        """
        with self._lock:
            if identity not in self._records:
                raise UnknownModError(identity)
            direct = self._enabledDependents(identity)
            if direct and not cascade:
                raise StillRequiredError(identity, direct)

            depth: dict[ModIdentity, int] = {identity: 0}
            frontier = [identity]
            # Longest-path depth over the dependents relation; bounded by the record count
            for _ in range(len(self._records)):
                nextFrontier: list[ModIdentity] = []
                for current in frontier:
                    for dependent in self._enabledDependents(current):
                        if depth.get(dependent, -1) < depth[current] + 1:
                            depth[dependent] = depth[current] + 1
                            nextFrontier.append(dependent)
                if not nextFrontier:
                    break
                frontier = sorted(set(nextFrontier))

            ordered = sorted(depth, key=lambda ident: (-depth[ident], ident.sortKey()))
            if not force:
                for ident in ordered:
                    if ident in self.protected:
                        raise ProtectedModError(ident, "removed")
            return [self._records[ident] for ident in ordered]

    def remove(self, identity: ModIdentity, *, cascade: bool = False, force: bool = False) -> list[LedgerRecord]:
        """Remove `identity` (and with cascade its dependents first). Returns removed records in order."""
        with self._lock:
            order = self.removalOrder(identity, cascade=cascade, force=force)
            removed = {record.identity for record in order}
            self._apply({ident: rec for ident, rec in self._records.items() if ident not in removed})
        logger.info("Ledger: removed %s", ", ".join(record.label for record in order))
        return order

    def discard(self, identity: ModIdentity) -> LedgerRecord:
        """
        Drop a single record without dependency checks.

        Used by the pipeline while it walks an order already validated by
        removalOrder, so that a crash mid-way leaves the ledger matching disk.
        """
        with self._lock:
            record = self._records.get(identity)
            if record is None:
                raise UnknownModError(identity)
            self._apply({ident: rec for ident, rec in self._records.items() if ident != identity})
        logger.info("Ledger: removed %s", record.label)
        return record
