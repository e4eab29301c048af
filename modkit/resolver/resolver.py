# modkit/resolver/resolver.py
from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from itertools import groupby

from modkit.config.settings import settingsInt
from modkit.core.errors import ModkitError
from modkit.ledger.ledger import LedgerRecord
from modkit.manifest.model import ConflictSpec, ModIdentity, ModManifest
from modkit.manifest.version import ConstraintKind, ModVersion, VersionConstraint
from modkit.resolver.graph import DependencyGraph
from modkit.resolver.pool import ModPool, ModPoolEntry, SourceDescriptor

logger = logging.getLogger(__name__)

__all__ = [
    "ORIGIN_REQUESTED",
    "ORIGIN_INSTALLED",
    "ModRequest",
    "ConstraintSource",
    "ResolutionError",
    "ConflictError",
    "CycleError",
    "UnsatisfiableError",
    "ResolutionLimitError",
    "InstallPlanEntry",
    "InstallPlan",
    "resolve",
]



ORIGIN_REQUESTED = "requested"
ORIGIN_INSTALLED = "installed"

# (identity, constraint) as handed in by the caller
ModRequest = tuple[ModIdentity, VersionConstraint]



@dataclass(frozen=True)
class ConstraintSource:
    """A constraint on some identity together with who imposed it."""
    constraint: VersionConstraint
    # "requested", "installed" or the dependent's "namespace-name@version"
    origin: str

    def __str__(self) -> str:
        return f"{self.constraint} (from {self.origin})"



# ------------------------------------------------------------------ #
# Errors
# ------------------------------------------------------------------ #

class ResolutionError(ModkitError):
    """Deterministic for given inputs; never retried."""



class ConflictError(ResolutionError):
    """Two mods of the closure exclude each other. `first` < `second` in identity order."""

    def __init__(self, a: ModIdentity, aVersion: ModVersion, b: ModIdentity, bVersion: ModVersion) -> None:
        if b < a:
            a, aVersion, b, bVersion = b, bVersion, a, aVersion
        super().__init__(f"{a}@{aVersion} conflicts with {b}@{bVersion}")
        self.first = a
        self.firstVersion = aVersion
        self.second = b
        self.secondVersion = bVersion

    @property
    def parties(self) -> frozenset[ModIdentity]:
        return frozenset((self.first, self.second))



class CycleError(ResolutionError):
    def __init__(self, path: Sequence[ModIdentity]) -> None:
        self.path: tuple[ModIdentity, ...] = tuple(path)
        super().__init__(f"Dependency cycle: {' -> '.join(str(identity) for identity in self.path)}")



class UnsatisfiableError(ResolutionError):
    """
    No available version of `identity` satisfies every accumulated constraint.

    `constraints` lists each constraint with its origin; `available` the
    versions the pool offered (highest first).
    """

    def __init__(
        self,
        identity: ModIdentity,
        constraints: Iterable[ConstraintSource],
        available: Iterable[ModVersion],
    ) -> None:
        self.identity = identity
        self.constraints: tuple[ConstraintSource, ...] = tuple(constraints)
        self.available: tuple[ModVersion, ...] = tuple(available)
        wanted = ", ".join(str(item) for item in self.constraints) or "any version"
        offered = ", ".join(str(version) for version in self.available) or "none"
        super().__init__(f"No version of {identity} satisfies {wanted}; available: {offered}")

    @property
    def constraintTexts(self) -> tuple[str, ...]:
        return tuple(item.constraint.text for item in self.constraints)



class ResolutionLimitError(ResolutionError):
    def __init__(self, passes: int) -> None:
        super().__init__(f"Resolution did not settle within {passes} passes")
        self.passes = passes



# ------------------------------------------------------------------ #
# Plan
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class InstallPlanEntry:
    identity: ModIdentity
    version: ModVersion
    source: SourceDescriptor
    # Dependencies always have a strictly lower rank than their dependents
    rank: int
    manifest: ModManifest = field(compare=False)
    # Version recorded in the ledger when this entry replaces an installed mod
    previousVersion: ModVersion | None = None

    @property
    def label(self) -> str:
        return f"{self.identity}@{self.version}"

    @property
    def isReplacement(self) -> bool:
        return self.previousVersion is not None



@dataclass(frozen=True)
class InstallPlan:
    entries: tuple[InstallPlanEntry, ...] = ()

    def __iter__(self) -> Iterator[InstallPlanEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __bool__(self) -> bool:
        return bool(self.entries)

    def identities(self) -> list[ModIdentity]:
        return [entry.identity for entry in self.entries]

    def get(self, identity: ModIdentity) -> InstallPlanEntry | None:
        for entry in self.entries:
            if entry.identity == identity:
                return entry
        return None

    def byRank(self) -> list[tuple[int, tuple[InstallPlanEntry, ...]]]:
        """Entries grouped per rank, lowest rank first; each group may run concurrently."""
        return [(rank, tuple(group)) for rank, group in groupby(self.entries, key=lambda entry: entry.rank)]



# ------------------------------------------------------------------ #
# Resolution
# ------------------------------------------------------------------ #

class _LearnedConstraint(Exception):
    """A constraint rejected an already-selected version; restart with it known up front."""

    def __init__(self, identity: ModIdentity, source: ConstraintSource) -> None:
        super().__init__(f"{identity}: {source}")
        self.identity = identity
        self.source = source



class _Pass:
    """One greedy highest-compatible pass. Raises _LearnedConstraint to request a restart."""

    def __init__(
        self,
        requests: dict[ModIdentity, list[VersionConstraint]],
        pool: ModPool,
        pinned: dict[ModIdentity, LedgerRecord],
        learned: dict[ModIdentity, list[ConstraintSource]],
    ) -> None:
        self.requests = requests
        self.pool = pool
        self.pinned = pinned
        self.constraints: dict[ModIdentity, list[ConstraintSource]] = {
            identity: list(sources) for identity, sources in learned.items()
        }
        self.selected: dict[ModIdentity, ModPoolEntry] = {}
        self.graph = DependencyGraph()

    def _constrain(self, identity: ModIdentity, source: ConstraintSource) -> None:
        bucket = self.constraints.setdefault(identity, [])
        if source not in bucket:
            bucket.append(source)

    def run(self) -> None:
        for record in sorted(self.pinned.values(), key=lambda item: item.identity.sortKey()):
            for dep in record.dependencies:
                self._constrain(dep.target, ConstraintSource(dep.constraint, record.label))

        for identity in sorted(self.requests):
            for constraint in self.requests[identity]:
                self._constrain(identity, ConstraintSource(constraint, ORIGIN_REQUESTED))

        for identity in sorted(self.requests):
            self.graph.addNode(identity)
            self._visit(identity)

    def _checkPinned(self, identity: ModIdentity) -> None:
        record = self.pinned[identity]
        sources = self.constraints.get(identity, [])
        if all(source.constraint.isSatisfiedBy(record.version) for source in sources):
            return
        pin = ConstraintSource(VersionConstraint.exact(record.version), ORIGIN_INSTALLED)
        raise UnsatisfiableError(identity, [*sources, pin], self.pool.availableVersions(identity))

    def _select(self, identity: ModIdentity) -> ModPoolEntry:
        sources = self.constraints.get(identity, [])
        candidates = self.pool.versions(identity)
        for entry in candidates:
            if all(source.constraint.isSatisfiedBy(entry.version) for source in sources):
                return entry
        raise UnsatisfiableError(identity, sources, (entry.version for entry in candidates))

    def _visit(self, identity: ModIdentity) -> None:
        if identity in self.selected:
            return
        if identity in self.pinned:
            self._checkPinned(identity)
            return

        entry = self._select(identity)
        self.selected[identity] = entry
        logger.debug("Selected %s", entry.manifest.label)

        for dep in sorted(entry.manifest.dependencies, key=lambda item: item.target.sortKey()):
            self.graph.addEdge(identity, dep.target)
            source = ConstraintSource(dep.constraint, entry.manifest.label)
            self._constrain(dep.target, source)

            chosen = self.selected.get(dep.target)
            if chosen is not None:
                if not dep.constraint.isSatisfiedBy(chosen.version):
                    raise _LearnedConstraint(dep.target, source)
                continue
            self._visit(dep.target)



def _normalizeRequests(
    requested: Iterable[ModRequest],
    installed: dict[ModIdentity, LedgerRecord],
) -> dict[ModIdentity, list[VersionConstraint]]:
    out: dict[ModIdentity, list[VersionConstraint]] = {}
    for identity, constraint in requested:
        if constraint.kind is ConstraintKind.ABSENT:
            # Install only if nothing is installed yet; otherwise keep what is there
            if identity in installed:
                logger.debug("Skipping request for %s: already installed", identity)
                continue
            constraint = VersionConstraint.any()
        bucket = out.setdefault(identity, [])
        if constraint not in bucket:
            bucket.append(constraint)
    return out



def _checkConflicts(closure: dict[ModIdentity, tuple[ModVersion, tuple[ConflictSpec, ...]]]) -> None:
    ordered = sorted(closure)
    for i, first in enumerate(ordered):
        firstVersion, firstConflicts = closure[first]
        for second in ordered[i + 1:]:
            secondVersion, secondConflicts = closure[second]
            if any(spec.matches(second, secondVersion) for spec in firstConflicts) or any(
                spec.matches(first, firstVersion) for spec in secondConflicts
            ):
                raise ConflictError(first, firstVersion, second, secondVersion)



def resolve(
    requested: Iterable[ModRequest],
    pool: ModPool,
    installed: Iterable[LedgerRecord] = (),
    *,
    maxPasses: int | None = None,
) -> InstallPlan:
    """
    Compute an install plan for `requested` against `pool`.

    Enabled installed records are pinned at their version unless requested
    again; their dependency constraints still apply to everything selected.
    Each identity gets the highest pool version satisfying every constraint
    accumulated so far. Requests and dependencies are visited in identity
    order, so the result is a pure function of the inputs.

    Raises UnsatisfiableError, CycleError or ConflictError (in that order of
    discovery). Neither `pool` nor `installed` is modified.
    """
    if maxPasses is None:
        maxPasses = settingsInt("resolver.maxPasses", 32)
    maxPasses = max(1, maxPasses)

    installedBy = {record.identity: record for record in installed}
    requests = _normalizeRequests(requested, installedBy)
    pinned = {
        identity: record
        for identity, record in installedBy.items()
        if record.enabled and identity not in requests
    }

    learned: dict[ModIdentity, list[ConstraintSource]] = {}
    for passNo in range(1, maxPasses + 1):
        attempt = _Pass(requests, pool, pinned, learned)
        try:
            attempt.run()
        except _LearnedConstraint as restart:
            logger.debug("Resolution pass %d: learned %s for %s, restarting", passNo, restart.source, restart.identity)
            learned.setdefault(restart.identity, []).append(restart.source)
            continue
        break
    else:
        raise ResolutionLimitError(maxPasses)

    cycle = attempt.graph.findCycle()
    if cycle is not None:
        raise CycleError(cycle)

    closure: dict[ModIdentity, tuple[ModVersion, tuple[ConflictSpec, ...]]] = {
        identity: (record.version, record.conflicts) for identity, record in pinned.items()
    }
    for identity, entry in attempt.selected.items():
        closure[identity] = (entry.version, entry.manifest.conflicts)
    _checkConflicts(closure)

    ranks = attempt.graph.ranks(attempt.selected)
    entries = [
        InstallPlanEntry(
            identity=identity,
            version=entry.version,
            source=entry.source,
            rank=ranks[identity],
            manifest=entry.manifest,
            previousVersion=installedBy[identity].version if identity in installedBy else None,
        )
        for identity, entry in attempt.selected.items()
    ]
    entries.sort(key=lambda item: (item.rank, item.identity.sortKey()))
    plan = InstallPlan(tuple(entries))
    logger.info(
        "Resolved %d request(s) into %d plan entr%s: %s",
        len(requests), len(plan), "y" if len(plan) == 1 else "ies",
        ", ".join(entry.label for entry in plan) or "nothing to do",
    )
    return plan
