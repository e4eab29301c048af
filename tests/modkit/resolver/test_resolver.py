# tests/modkit/resolver/test_resolver.py
import pytest
from hypothesis import given, settings as hsettings, strategies as st

from modkit.ledger.ledger import LedgerRecord
from modkit.manifest.model import DependencySpec, ModIdentity, ModManifest
from modkit.manifest.version import ModVersion, VersionConstraint, parseModVersion, parseVersionConstraint
from modkit.resolver.pool import ModPool, ModPoolEntry, RemoteSource
from modkit.resolver.resolver import (
    ConflictError,
    CycleError,
    InstallPlan,
    ResolutionLimitError,
    UnsatisfiableError,
    resolve,
)


def _id(text: str) -> ModIdentity:
    return ModIdentity.parse(text)


def _req(identity: str, constraint: str | None = None):
    return (_id(identity), parseVersionConstraint(constraint))


def _pool(*manifests: ModManifest) -> ModPool:
    return ModPool(
        ModPoolEntry(manifest, RemoteSource(f"https://mods.example/{manifest.identity}/{manifest.version}.zip"))
        for manifest in manifests
    )


def _record(manifest: ModManifest, *, enabled: bool = True) -> LedgerRecord:
    return LedgerRecord(
        identity=manifest.identity,
        version=manifest.version,
        enabled=enabled,
        files=(f"{manifest.identity.slotName}/plugin.dll",),
        title=manifest.title,
        dependencies=manifest.dependencies,
        conflicts=manifest.conflicts,
    )


def _assertTopological(plan: InstallPlan) -> None:
    ranks = {entry.identity: entry.rank for entry in plan}
    for entry in plan:
        for dep in entry.manifest.dependencies:
            if dep.target in ranks:
                assert ranks[dep.target] < entry.rank


# ---- Scenarios ---- #

def test_caret_request_picks_highest_compatible(makeManifest):
    pool = _pool(makeManifest("A-A", "1.0.0"), makeManifest("A-A", "1.2.0"), makeManifest("A-A", "2.0.0"))
    plan = resolve([_req("A-A", "^1.0")], pool)
    assert [entry.label for entry in plan] == ["A-A@1.2.0"]


def test_unsatisfiable_dependency_lists_constraints(makeManifest):
    pool = _pool(makeManifest("A-A", "1.0.0", deps=[("A-B", ">=2.0")]), makeManifest("A-B", "1.5.0"))

    with pytest.raises(UnsatisfiableError) as info:
        resolve([_req("A-A")], pool)

    err = info.value
    assert err.identity == _id("A-B")
    assert err.constraintTexts == (">=2.0",)
    assert err.constraints[0].origin == "A-A@1.0.0"
    assert err.available == (ModVersion(1, 5, 0),)
    assert "A-B" in str(err) and ">=2.0" in str(err)


def test_unknown_identity_is_unsatisfiable(makeManifest):
    with pytest.raises(UnsatisfiableError) as info:
        resolve([_req("A-Missing", ">=1.0")], _pool(makeManifest("A-A", "1.0.0")))
    assert info.value.available == ()
    assert info.value.constraints[0].origin == "requested"


@pytest.mark.parametrize("order", [("A-X", "A-Y"), ("A-Y", "A-X")])
def test_conflict_is_named_regardless_of_request_order(makeManifest, order):
    pool = _pool(makeManifest("A-X", "1.0.0", conflicts=["A-Y"]), makeManifest("A-Y", "1.0.0"))

    with pytest.raises(ConflictError) as info:
        resolve([_req(identity) for identity in order], pool)

    assert (info.value.first, info.value.second) == (_id("A-X"), _id("A-Y"))
    assert info.value.parties == {_id("A-X"), _id("A-Y")}


def test_conflict_declared_by_the_later_identity(makeManifest):
    pool = _pool(makeManifest("A-X", "1.0.0"), makeManifest("A-Y", "1.0.0", conflicts=[("A-X", "<2.0")]))
    with pytest.raises(ConflictError) as info:
        resolve([_req("A-Y"), _req("A-X")], pool)
    assert (info.value.first, info.value.second) == (_id("A-X"), _id("A-Y"))


def test_versioned_conflict_not_triggered_outside_range(makeManifest):
    pool = _pool(makeManifest("A-X", "1.0.0", conflicts=[("A-Y", "<1.0")]), makeManifest("A-Y", "1.1.0"))
    plan = resolve([_req("A-X"), _req("A-Y")], pool)
    assert len(plan) == 2


def test_conflict_with_pinned_installed_mod(makeManifest):
    installed = makeManifest("A-Old", "1.0.0")
    pool = _pool(makeManifest("A-New", "1.0.0", conflicts=["A-Old"]))
    with pytest.raises(ConflictError):
        resolve([_req("A-New")], pool, [_record(installed)])
    # A disabled record is not part of the closure
    assert len(resolve([_req("A-New")], pool, [_record(installed, enabled=False)])) == 1


def test_cycle_is_reported(makeManifest):
    pool = _pool(
        makeManifest("A-A", "1.0.0", deps=["A-B"]),
        makeManifest("A-B", "1.0.0", deps=["A-C"]),
        makeManifest("A-C", "1.0.0", deps=["A-A"]),
    )
    with pytest.raises(CycleError) as info:
        resolve([_req("A-A")], pool)
    assert info.value.path == (_id("A-A"), _id("A-B"), _id("A-C"), _id("A-A"))


def test_diamond_ranks(makeManifest):
    pool = _pool(
        makeManifest("A-App", "1.0.0", deps=["A-Left", "A-Right"]),
        makeManifest("A-Left", "1.0.0", deps=["A-Base"]),
        makeManifest("A-Right", "1.0.0", deps=["A-Base"]),
        makeManifest("A-Base", "1.0.0"),
    )
    plan = resolve([_req("A-App")], pool)
    assert [(entry.identity.name, entry.rank) for entry in plan] == [("Base", 0), ("Left", 1), ("Right", 1), ("App", 2)]
    assert [rank for rank, _group in plan.byRank()] == [0, 1, 2]
    _assertTopological(plan)


def test_learned_constraint_restarts_with_lower_version(makeManifest):
    # A-Lib is visited first (lexical order) and gets 2.0.0; A-Tool later needs <2.0
    pool = _pool(
        makeManifest("A-Lib", "2.0.0"),
        makeManifest("A-Lib", "1.5.0"),
        makeManifest("A-Tool", "1.0.0", deps=[("A-Lib", "<2.0")]),
    )
    plan = resolve([_req("A-Lib"), _req("A-Tool")], pool)
    assert plan.get(_id("A-Lib")).version == ModVersion(1, 5, 0)
    _assertTopological(plan)


def test_pass_limit(makeManifest):
    pool = _pool(
        makeManifest("A-Lib", "2.0.0"),
        makeManifest("A-Lib", "1.5.0"),
        makeManifest("A-Tool", "1.0.0", deps=[("A-Lib", "<2.0")]),
    )
    with pytest.raises(ResolutionLimitError):
        resolve([_req("A-Lib"), _req("A-Tool")], pool, maxPasses=1)


def test_pinned_records_are_not_replanned(makeManifest):
    base = makeManifest("A-Base", "1.0.0")
    pool = _pool(makeManifest("A-Base", "1.1.0"), makeManifest("A-App", "1.0.0", deps=[("A-Base", ">=1.0")]))

    plan = resolve([_req("A-App")], pool, [_record(base)])

    assert [entry.label for entry in plan] == ["A-App@1.0.0"]
    assert plan.get(_id("A-App")).rank == 0


def test_pinned_version_that_fails_a_dependency(makeManifest):
    base = makeManifest("A-Base", "1.0.0")
    pool = _pool(makeManifest("A-Base", "2.0.0"), makeManifest("A-App", "1.0.0", deps=[("A-Base", ">=2.0")]))

    with pytest.raises(UnsatisfiableError) as info:
        resolve([_req("A-App")], pool, [_record(base)])
    assert info.value.identity == _id("A-Base")
    assert [item.origin for item in info.value.constraints] == ["A-App@1.0.0", "installed"]

    # Requesting the upgrade explicitly unpins it
    plan = resolve([_req("A-App"), _req("A-Base")], pool, [_record(base)])
    assert plan.get(_id("A-Base")).version == ModVersion(2, 0, 0)
    assert plan.get(_id("A-Base")).previousVersion == ModVersion(1, 0, 0)


def test_pinned_dependency_constraints_are_seeded(makeManifest):
    user = makeManifest("A-User", "1.0.0", deps=[("A-Lib", "<2.0")])
    pool = _pool(makeManifest("A-Lib", "2.0.0"), makeManifest("A-Lib", "1.9.0"))
    plan = resolve([_req("A-Lib")], pool, [_record(user), _record(makeManifest("A-Lib", "1.0.0"))])
    assert plan.get(_id("A-Lib")).version == ModVersion(1, 9, 0)


def test_absent_request_only_installs_missing(makeManifest):
    pool = _pool(makeManifest("A-A", "1.0.0"), makeManifest("A-B", "1.0.0"))
    installed = [_record(makeManifest("A-A", "0.9.0"))]
    plan = resolve([_req("A-A", "none"), _req("A-B", "none")], pool, installed)
    assert [entry.label for entry in plan] == ["A-B@1.0.0"]


def test_resolution_does_not_mutate_inputs(makeManifest):
    pool = _pool(makeManifest("A-A", "1.0.0", deps=["A-B"]), makeManifest("A-B", "1.0.0"))
    installed = [_record(makeManifest("A-C", "1.0.0"))]
    before = (list(pool), list(installed))
    resolve([_req("A-A")], pool, installed)
    assert (list(pool), list(installed)) == before


# ---- Properties ---- #

_NAMES = [f"M{i}" for i in range(7)]


@st.composite
def _universe(draw):
    """Random acyclic pool: a mod may only depend on mods with a higher index."""
    manifests = []
    for idx, name in enumerate(_NAMES):
        versions = draw(st.lists(st.integers(0, 3), min_size=1, max_size=3, unique=True))
        for minor in versions:
            deps = []
            for target in _NAMES[idx + 1:]:
                if draw(st.booleans()) and draw(st.booleans()):
                    constraint = draw(st.sampled_from(["*", ">=1.1", "<1.3", "^1.0"]))
                    deps.append(DependencySpec(_id(f"P-{target}"), parseVersionConstraint(constraint)))
            manifests.append(ModManifest(_id(f"P-{name}"), parseModVersion(f"1.{minor}.0"), name, tuple(deps)))
    requested = draw(st.lists(st.sampled_from(_NAMES), min_size=1, max_size=4, unique=True))
    return manifests, [(_id(f"P-{name}"), VersionConstraint.any()) for name in requested]


def _tryResolve(requested, pool):
    try:
        return resolve(requested, pool)
    except UnsatisfiableError as err:
        return ("unsatisfiable", err.identity, err.constraintTexts)
    except ResolutionLimitError:
        return ("limit",)


@hsettings(max_examples=100, deadline=None)
@given(_universe())
def test_plan_is_topological_and_deterministic(universe):
    manifests, requested = universe
    first = _tryResolve(requested, _pool(*manifests))
    second = _tryResolve(list(reversed(requested)), _pool(*reversed(manifests)))

    assert first == second
    if isinstance(first, InstallPlan):
        _assertTopological(first)
        for entry in first:
            # Every planned version satisfies every dependent's constraint in the plan
            for other in first:
                for dep in other.manifest.dependencies:
                    if dep.target == entry.identity:
                        assert dep.constraint.isSatisfiedBy(entry.version)
