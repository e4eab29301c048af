# tests/modkit/manifest/test_manifest_version.py
import pytest

from modkit.manifest.version import (
    ConstraintKind,
    ModVersion,
    VersionConstraint,
    parseModVersion,
    parseVersionConstraint,
)


def _v(text: str) -> ModVersion:
    return parseModVersion(text)


@pytest.mark.parametrize("raw, expected", [
    ("1.2.3", ModVersion(1, 2, 3)),
    ("0.0.1", ModVersion(0, 0, 1)),
    ("v10.20.30", ModVersion(10, 20, 30)),
    ("  2.0.0 ", ModVersion(2, 0, 0)),
])
def test_parse_mod_version_accepts_strict_triples(raw, expected):
    assert parseModVersion(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", "1", "1.2", "1.2.3.4", "01.2.3", "1.02.3", "1.2.3-beta", "a.b.c", "1..3", "vv1.2.3"])
def test_parse_mod_version_rejects_malformed(raw):
    with pytest.raises(ValueError):
        parseModVersion(raw)


def test_parse_mod_version_rejects_non_strings():
    with pytest.raises(TypeError):
        parseModVersion(123)  # type: ignore[arg-type]


def test_mod_version_total_ordering():
    versions = [_v("1.10.0"), _v("1.2.0"), _v("0.9.9"), _v("1.2.10"), _v("2.0.0")]
    assert [str(v) for v in sorted(versions)] == ["0.9.9", "1.2.0", "1.2.10", "1.10.0", "2.0.0"]
    assert _v("1.0.0") <= _v("1.0.0") < _v("1.0.1")


def test_mod_version_rejects_negative_components():
    with pytest.raises(ValueError):
        ModVersion(1, -1, 0)


def test_any_and_absent_semantics():
    anyC = parseVersionConstraint("*")
    assert anyC.kind is ConstraintKind.ANY
    assert anyC.isSatisfiedBy(_v("0.0.0"))
    assert not anyC.isSatisfiedBy(None)

    absent = parseVersionConstraint("none")
    assert absent.kind is ConstraintKind.ABSENT
    assert absent.isSatisfiedBy(None)
    assert not absent.isSatisfiedBy(_v("1.0.0"))
    assert parseVersionConstraint("!") == absent


@pytest.mark.parametrize("raw", [None, "", "   ", "*"])
def test_empty_forms_mean_any(raw):
    assert parseVersionConstraint(raw).kind is ConstraintKind.ANY


@pytest.mark.parametrize("raw", ["1.2.3", "=1.2.3", "==1.2.3"])
def test_exact_forms(raw):
    constraint = parseVersionConstraint(raw)
    assert constraint.kind is ConstraintKind.EXACT
    assert constraint.isSatisfiedBy(_v("1.2.3"))
    assert not constraint.isSatisfiedBy(_v("1.2.4"))
    assert not constraint.isSatisfiedBy(None)


@pytest.mark.parametrize("raw, inside, outside", [
    ("^1.2", ["1.2.0", "1.9.9"], ["1.1.9", "2.0.0"]),
    ("^0.3.1", ["0.3.1", "0.3.9"], ["0.4.0", "0.3.0"]),
    ("^0.0.4", ["0.0.4"], ["0.0.5", "0.0.3"]),
    ("~1.2.3", ["1.2.3", "1.2.99"], ["1.3.0", "1.2.2"]),
    ("~1", ["1.0.0", "1.9.0"], ["2.0.0"]),
    (">=1.2.0 <2.0.0", ["1.2.0", "1.99.0"], ["2.0.0", "1.1.0"]),
    (">1.0 <=1.5", ["1.0.1", "1.5.0"], ["1.0.0", "1.5.1"]),
    ("1.0 - 2.0", ["1.0.0", "2.0.0"], ["0.9.9", "2.0.1"]),
])
def test_range_forms(raw, inside, outside):
    constraint = parseVersionConstraint(raw)
    assert constraint.kind is ConstraintKind.RANGE
    for text in inside:
        assert constraint.isSatisfiedBy(_v(text)), text
    for text in outside:
        assert not constraint.isSatisfiedBy(_v(text)), text


def test_constraint_text_is_canonical_and_reparses():
    for raw in [">=1.2.0   <2.0.0", "^1.0", "1.0 -  2.0", "=1.2.3", "none", "*"]:
        constraint = parseVersionConstraint(raw)
        assert parseVersionConstraint(constraint.text) == constraint
        assert str(constraint) == constraint.text


def test_factory_constraints_reparse():
    version = _v("1.4.2")
    for constraint in (VersionConstraint.any(), VersionConstraint.absent(), VersionConstraint.exact(version), VersionConstraint.atLeast(version)):
        assert parseVersionConstraint(constraint.text) == constraint


@pytest.mark.parametrize("raw", [">=", "^", "~x", "2.0 - 1.0", ">=1.2.3.4", "1.2.3 foo"])
def test_malformed_constraints_raise(raw):
    with pytest.raises(ValueError):
        parseVersionConstraint(raw)
