# modkit/pipeline/installer.py
from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from modkit.config.settings import settingsInt
from modkit.core.cancel import CancelToken
from modkit.core.errors import PlanEntryError
from modkit.core.logger import clearLogContext, getModLogger, setLogContext
from modkit.fetch.cache import ArchiveCache
from modkit.fetch.fetcher import ArchiveFetcher
from modkit.install.errors import InstallCancelledError
from modkit.install.placement import PlacementEngine
from modkit.install.tree import ModTree, TreeLock
from modkit.ledger.ledger import InstallationLedger, LedgerRecord
from modkit.manifest.model import ModIdentity
from modkit.resolver.pool import ModPool
from modkit.resolver.resolver import InstallPlan, InstallPlanEntry, ModRequest, resolve

logger = logging.getLogger(__name__)

__all__ = [
    "EntryStatus",
    "EntryOutcome",
    "InstallReport",
    "ModManager",
]



InstallProgress = Callable[[ModIdentity, int, "int | None"], None]



class EntryStatus(str, Enum):
    COMMITTED = "committed"
    FAILED = "failed"
    # Not started because an earlier entry failed
    SKIPPED = "skipped"



@dataclass(frozen=True)
class EntryOutcome:
    entry: InstallPlanEntry
    status: EntryStatus
    record: LedgerRecord | None = None
    error: PlanEntryError | None = None

    @property
    def identity(self) -> ModIdentity:
        return self.entry.identity



@dataclass(frozen=True)
class InstallReport:
    """Per-entry outcomes in plan order. Entries committed before a failure stay committed."""
    plan: InstallPlan
    outcomes: tuple[EntryOutcome, ...]

    @property
    def ok(self) -> bool:
        return all(outcome.status is EntryStatus.COMMITTED for outcome in self.outcomes)

    def _withStatus(self, status: EntryStatus) -> list[EntryOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is status]

    @property
    def committed(self) -> list[EntryOutcome]:
        return self._withStatus(EntryStatus.COMMITTED)

    @property
    def failed(self) -> list[EntryOutcome]:
        return self._withStatus(EntryStatus.FAILED)

    @property
    def skipped(self) -> list[EntryOutcome]:
        return self._withStatus(EntryStatus.SKIPPED)

    def outcomeFor(self, identity: ModIdentity) -> EntryOutcome | None:
        for outcome in self.outcomes:
            if outcome.identity == identity:
                return outcome
        return None

    def raiseForFailure(self) -> None:
        for outcome in self.outcomes:
            if outcome.error is not None:
                raise outcome.error



class ModManager:
    """
    Front door of the engine for one mods tree.

    Owns the ledger and placement engine for the tree and borrows (or
    creates) an ArchiveFetcher. Every mutating operation holds the tree lock,
    so a second manager on the same root fails fast with TreeBusyError.
    """

    def __init__(
        self,
        tree: ModTree | str | os.PathLike[str],
        *,
        fetcher: ArchiveFetcher | None = None,
        ledger: InstallationLedger | None = None,
        placement: PlacementEngine | None = None,
        workers: int | None = None,
    ) -> None:
        self.tree = tree if isinstance(tree, ModTree) else ModTree.at(tree)
        self.ledger = ledger or InstallationLedger(self.tree.ledgerPath, enabledIndexPath=self.tree.enabledIndexPath)
        self.placement = placement or PlacementEngine(self.tree)
        self.workers = max(1, workers if workers is not None else settingsInt("install.workers", 4))
        self._fetcher = fetcher
        self._ownsFetcher = False

    @property
    def fetcher(self) -> ArchiveFetcher:
        if self._fetcher is None:
            self._fetcher = ArchiveFetcher(cache=ArchiveCache.fromSettings(fallback=self.tree.cacheDir))
            self._ownsFetcher = True
        return self._fetcher

    async def aclose(self) -> None:
        if self._ownsFetcher and self._fetcher is not None:
            await self._fetcher.aclose()
            self._fetcher = None
            self._ownsFetcher = False

    async def __aenter__(self) -> ModManager:
        return self

    async def __aexit__(self, excType, exc, tb) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def installed(self) -> tuple[LedgerRecord, ...]:
        return self.ledger.list()

    def plan(self, requested: Iterable[ModRequest], pool: ModPool) -> InstallPlan:
        """Dry run: the plan install() would execute right now."""
        return resolve(requested, pool, self.ledger.list())

    # ------------------------------------------------------------------ #
    # Install
    # ------------------------------------------------------------------ #

    async def install(
        self,
        requested: Iterable[ModRequest],
        pool: ModPool,
        *,
        cancel: CancelToken | None = None,
        progress: InstallProgress | None = None,
    ) -> InstallReport:
        """
        Resolve `requested` and execute the plan rank by rank.

        ResolutionError propagates unchanged. Per-entry failures are wrapped
        in PlanEntryError and reported in the returned InstallReport; the
        first one stops every entry that has not started yet.
        """
        with TreeLock(self.tree):
            self.placement.recover()
            plan = resolve(requested, pool, self.ledger.list())
            planId = uuid.uuid4().hex[:12]
            setLogContext(planId=planId)
            try:
                return await self._execute(plan, cancel, progress)
            finally:
                clearLogContext()

    async def _execute(
        self,
        plan: InstallPlan,
        cancel: CancelToken | None,
        progress: InstallProgress | None,
    ) -> InstallReport:
        outcomes: list[EntryOutcome] = []
        abort = asyncio.Event()
        semaphore = asyncio.Semaphore(self.workers)

        for rank, group in plan.byRank():
            if abort.is_set():
                outcomes.extend(EntryOutcome(entry, EntryStatus.SKIPPED) for entry in group)
                continue
            logger.debug("Rank %d: %s", rank, ", ".join(entry.label for entry in group))
            # Barrier: the whole rank settles before the next one starts
            results = await asyncio.gather(
                *(self._runEntry(entry, semaphore, abort, cancel, progress) for entry in group)
            )
            outcomes.extend(results)

        report = InstallReport(plan, tuple(outcomes))
        logger.info(
            "Install finished: %d committed, %d failed, %d skipped",
            len(report.committed), len(report.failed), len(report.skipped),
        )
        return report

    async def _runEntry(
        self,
        entry: InstallPlanEntry,
        semaphore: asyncio.Semaphore,
        abort: asyncio.Event,
        cancel: CancelToken | None,
        progress: InstallProgress | None,
    ) -> EntryOutcome:
        async with semaphore:
            if abort.is_set():
                return EntryOutcome(entry, EntryStatus.SKIPPED)

            modLogger = getModLogger(entry.identity)
            reached = ["fetch"]
            setLogContext(modId=str(entry.identity), stage="fetch")
            try:
                def onProgress(received: int, total: int | None) -> None:
                    if progress is not None:
                        progress(entry.identity, received, total)

                data = await self.fetcher.fetch(entry.source, cancel=cancel, progress=onProgress)

                reached.append("stage")
                setLogContext(stage="stage")
                halt = CancelToken()
                work = asyncio.ensure_future(asyncio.to_thread(self._placeEntry, entry, data, cancel, halt, reached))
                record = await self._awaitPlacement(work, halt)
            except Exception as err:
                abort.set()
                stage = reached[-1]
                wrapped = PlanEntryError(entry.identity, stage, err)
                wrapped.__cause__ = err
                modLogger.error("%s failed during %s: %s", entry.label, stage, err)
                return EntryOutcome(entry, EntryStatus.FAILED, error=wrapped)

            if entry.previousVersion is None:
                modLogger.info("Installed %s", entry.label)
            else:
                modLogger.info("Replaced %s@%s with %s", entry.identity, entry.previousVersion, entry.label)
            return EntryOutcome(entry, EntryStatus.COMMITTED, record=record)

    async def _awaitPlacement(self, work: asyncio.Future[LedgerRecord], halt: CancelToken) -> LedgerRecord:
        """
        Wait for a placement thread without ever abandoning it.

        Cancelling the install task sets `halt`, which stops the thread before
        commit; a commit already running finishes (or rolls back) and cleans
        its staging directory before CancelledError propagates, so the tree
        lock is never released under a live writer.
        """
        interrupted = False
        while not work.done():
            try:
                await asyncio.wait([work])
            except asyncio.CancelledError:
                interrupted = True
                halt.cancel("install task cancelled")
        if interrupted:
            if work.exception() is not None:
                logger.warning("Placement ended with an error after cancellation: %s", work.exception())
            raise asyncio.CancelledError()
        return work.result()

    def _placeEntry(
        self,
        entry: InstallPlanEntry,
        data: bytes,
        cancel: CancelToken | None,
        halt: CancelToken,
        reached: list[str],
    ) -> LedgerRecord:
        staged = self.placement.stage(data, entry.manifest, cancel=cancel)
        try:
            for token in (cancel, halt):
                if token is not None and token.cancelled:
                    raise InstallCancelledError(token.reason)
            reached.append("commit")
            setLogContext(stage="commit")
            previous = self.ledger.get(entry.identity)
            # The ledger write is part of the commit: a failed upsert restores the slot
            return self.placement.commit(staged, entry.manifest, previous=previous, onPlaced=self.ledger.upsert)
        finally:
            self.placement.discard(staged)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def uninstall(self, identity: ModIdentity, *, force: bool = False) -> list[LedgerRecord]:
        """
        Remove `identity` and its owned files.

        Without force, enabled dependents raise StillRequiredError. With
        force they are uninstalled first, deepest dependent first. Each
        record leaves the ledger right after its files are gone.
        """
        with TreeLock(self.tree):
            order = self.ledger.removalOrder(identity, cascade=force, force=force)
            for record in order:
                self.placement.removeOwned(record)
                self.ledger.discard(record.identity)
                getModLogger(record.identity).info("Uninstalled %s", record.label)
            return order

    def enable(self, identity: ModIdentity) -> LedgerRecord:
        with TreeLock(self.tree):
            return self.ledger.setEnabled(identity, True)

    def disable(self, identity: ModIdentity, *, force: bool = False) -> LedgerRecord:
        with TreeLock(self.tree):
            return self.ledger.setEnabled(identity, False, force=force)
