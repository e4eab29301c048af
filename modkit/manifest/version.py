# modkit/manifest/version.py
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from functools import total_ordering
from typing import Literal

__all__ = [
    "ModVersion",
    "VersionComparator",
    "ConstraintKind",
    "VersionConstraint",
    "parseModVersion",
    "parseVersionConstraint",
]



_NUMERIC_RE = re.compile(r"0|[1-9]\d*")

Operator = Literal["<", "<=", ">", ">=", "=="]



@total_ordering
@dataclass(frozen=True)
class ModVersion:
    major: int
    minor: int
    patch: int

    def __post_init__(self) -> None:
        for part in (self.major, self.minor, self.patch):
            if not isinstance(part, int) or isinstance(part, bool) or part < 0:
                raise ValueError(f"Version components must be non-negative integers, got {part!r}")

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    def __repr__(self) -> str:
        return f"ModVersion({self.major}, {self.minor}, {self.patch})"

    def _cmpKey(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ModVersion):
            return NotImplemented
        return self._cmpKey() < other._cmpKey()



def _parseCore(raw: str, *, allowPartial: bool) -> ModVersion:
    text = raw.strip()
    if not text:
        raise ValueError("Version string cannot be empty or whitespace only")

    # Accept a single 'v' and remove it (v1.2.3 -> 1.2.3)
    if text.startswith("v") and len(text) > 1 and "0" <= text[1] <= "9":
        text = text[1:]

    parts = text.split(".")
    if allowPartial:
        if not 1 <= len(parts) <= 3:
            raise ValueError(f"Invalid version {raw!r}: expected 1 to 3 numeric components")
    elif len(parts) != 3:
        raise ValueError(f"Invalid version {raw!r}: expected major.minor.patch")

    numericParts: list[int] = []
    for part in parts:
        # Rejects empty components (".1", "1.", "1..3"), leading zeros and suffixes
        if not _NUMERIC_RE.fullmatch(part):
            raise ValueError(f"Invalid numeric component {part!r} in version {raw!r}")
        numericParts.append(int(part))

    while len(numericParts) < 3:
        numericParts.append(0)

    major, minor, patch = numericParts
    return ModVersion(major, minor, patch)



def parseModVersion(raw: str) -> ModVersion:
    """
    Parse a strict `major.minor.patch` version string.

    Accepted: "1.2.3", "0.0.1", "v1.2.3".
    Rejected: "1", "1.2", "1.2.3.4", "01.2.3", "1.2.3-beta", "" and non-strings.
    """
    if not isinstance(raw, str):
        raise TypeError(f"Version string must be a string type, got {type(raw).__name__}")
    return _parseCore(raw, allowPartial=False)



# ------------------------------------------------------------------ #
# Constraints
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class VersionComparator:
    operator: Operator
    version: ModVersion

    def test(self, version: ModVersion) -> bool:
        if self.operator == "==":
            return version == self.version
        if self.operator == ">=":
            return version >= self.version
        if self.operator == "<=":
            return version <= self.version
        if self.operator == ">":
            return version > self.version
        if self.operator == "<":
            return version < self.version
        raise ValueError(f"Unknown operator {self.operator!r}")

    def __str__(self) -> str:
        return f"{self.operator}{self.version}"



class ConstraintKind(str, Enum):
    EXACT = "exact"
    RANGE = "range"
    ANY = "any"
    # "none installed yet": satisfied only when no version is present
    ABSENT = "absent"



@dataclass(frozen=True)
class VersionConstraint:
    """
    A requirement on a mod version.

    Comparators are AND-ed. `text` is the canonical form used in diagnostics
    and serialization; parsing `text` again yields an equal constraint.
    """
    kind: ConstraintKind
    comparators: tuple[VersionComparator, ...] = ()
    text: str = "*"

    @classmethod
    def any(cls) -> VersionConstraint:
        return cls(ConstraintKind.ANY, (), "*")

    @classmethod
    def absent(cls) -> VersionConstraint:
        return cls(ConstraintKind.ABSENT, (), "none")

    @classmethod
    def exact(cls, version: ModVersion) -> VersionConstraint:
        return cls(ConstraintKind.EXACT, (VersionComparator("==", version),), f"={version}")

    @classmethod
    def atLeast(cls, version: ModVersion) -> VersionConstraint:
        return cls(ConstraintKind.RANGE, (VersionComparator(">=", version),), f">={version}")

    def isSatisfiedBy(self, version: ModVersion | None) -> bool:
        """
        Pure and total.

        - any:    every version, but not "nothing installed"
        - absent: only "nothing installed" (None)
        - exact/range: a version passing every comparator
        """
        if self.kind is ConstraintKind.ABSENT:
            return version is None
        if version is None:
            return False
        if self.kind is ConstraintKind.ANY:
            return True
        return all(comparator.test(version) for comparator in self.comparators)

    def __str__(self) -> str:
        return self.text



def _caretToComparators(version: ModVersion) -> tuple[VersionComparator, VersionComparator]:
    """
    ^M.m.p -> caret expansion following SemVer semantics:

    - If M > 0:
        >= M.m.p  and  < (M+1).0.0
    - If M == 0 and m > 0:
        >= 0.m.p  and  < 0.(m+1).0
    - If M == 0 and m == 0
        >= 0.0.p  and  < 0.0.(p+1)
    """
    major, minor, patch = version.major, version.minor, version.patch
    if major > 0:
        upperVersion = ModVersion(major + 1, 0, 0)
    elif minor > 0:
        upperVersion = ModVersion(0, minor + 1, 0)
    else:
        upperVersion = ModVersion(0, 0, patch + 1)
    return VersionComparator(">=", version), VersionComparator("<", upperVersion)



def _tildeToComparators(version: ModVersion) -> tuple[VersionComparator, VersionComparator]:
    """
    ~M.m.p -> tilde expansion:

    - If minor or patch non-zero:
        >= M.m.p  and  < M.(m+1).0
    - Else (only Major specified, e.g. '~1')
        >= M.0.0  and  < (M+1).0.0
    """
    major, minor, patch = version.major, version.minor, version.patch
    if minor > 0 or patch > 0:
        upperVersion = ModVersion(major, minor + 1, 0)
    else:
        upperVersion = ModVersion(major + 1, 0, 0)
    return VersionComparator(">=", version), VersionComparator("<", upperVersion)



def _constraintVersion(raw: str, rawRequirement: str) -> ModVersion:
    if not raw:
        raise ValueError(f"Missing version in constraint {rawRequirement!r}")
    return _parseCore(raw, allowPartial=True)



def parseVersionConstraint(rawConstraint: str | None) -> VersionConstraint:
    """
    Parse a constraint string into VersionConstraint.

    Accepted forms:

        None, "", or "*"        -> any
        "none" or "!"           -> absent (nothing installed yet)

        "1.2.3", "=1.2.3"       -> exact 1.2.3
        ">=1.2.0"               -> >= 1.2.0
        ">=1.2.0 <2.0.0"        -> >=1.2.0 AND <2.0.0

        "^1.2"                  -> >=1.2.0 AND <2.0.0 (with 0.x semantics)
        "~1.2.3"                -> >=1.2.3 AND <1.3.0

        "1.2.3 - 2.0.0"         -> >=1.2.3 AND <=2.0.0

    Versions inside constraints may omit minor/patch ("^1.0", ">=2"); they are padded with zeros.
    Raises ValueError on malformed input.
    """
    if rawConstraint is None:
        return VersionConstraint.any()
    if not isinstance(rawConstraint, str):
        raise TypeError(f"Constraint must be a string or None, got {type(rawConstraint).__name__}")

    text = rawConstraint.strip()
    if not text or text == "*":
        return VersionConstraint.any()
    if text.lower() == "none" or text == "!":
        return VersionConstraint.absent()

    # Hyphen range: <left> - <right>
    mtch = re.match(r"^(?P<left>[v\d.]+)\s*-\s*(?P<right>[v\d.]+)$", text)
    if mtch:
        versionLeft = _constraintVersion(mtch.group("left"), text)
        versionRight = _constraintVersion(mtch.group("right"), text)
        if versionRight < versionLeft:
            raise ValueError(f"Invalid hyphen range {text!r}: upper < lower")
        comparators = (VersionComparator(">=", versionLeft), VersionComparator("<=", versionRight))
        return VersionConstraint(ConstraintKind.RANGE, comparators, " ".join(text.split()))

    comparatorList: list[VersionComparator] = []
    for token in text.split():
        if token[0] in ("^", "~"):
            version = _constraintVersion(token[1:], text)
            if token[0] == "^":
                comparatorList.extend(_caretToComparators(version))
            else:
                comparatorList.extend(_tildeToComparators(version))
            continue

        op = "=="
        versionPart = token
        for candidate in ("<=", ">=", "==", "<", ">", "="):
            if token.startswith(candidate):
                op = "==" if candidate == "=" else candidate
                versionPart = token[len(candidate):]
                break
        comparatorList.append(VersionComparator(op, _constraintVersion(versionPart, text)))  # type: ignore[arg-type]

    comparators = tuple(comparatorList)
    normalized = " ".join(text.split())
    if len(comparators) == 1 and comparators[0].operator == "==":
        return VersionConstraint(ConstraintKind.EXACT, comparators, normalized)
    return VersionConstraint(ConstraintKind.RANGE, comparators, normalized)
