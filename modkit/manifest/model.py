# modkit/manifest/model.py
from __future__ import annotations

import re
from dataclasses import dataclass, field

from modkit.manifest.version import ModVersion, VersionConstraint

__all__ = [
    "IDENTITY_PART_RE",
    "ModIdentity",
    "DependencySpec",
    "ConflictSpec",
    "ModManifest",
]



# Namespace and name share one alphabet; "-" is reserved as the separator in slot names.
IDENTITY_PART_RE = re.compile(r"^[A-Za-z0-9_]+$")



@dataclass(frozen=True)
class ModIdentity:
    """
    (namespace, name) pair that uniquely keys a mod across the whole system.

    Sorting is lexical and case-insensitive first so that plans and error
    messages come out in the same order on every platform.
    """
    namespace: str
    name: str

    def __post_init__(self) -> None:
        for label, value in (("namespace", self.namespace), ("name", self.name)):
            if not isinstance(value, str) or not IDENTITY_PART_RE.fullmatch(value):
                raise ValueError(f"Invalid mod {label} {value!r}: expected [A-Za-z0-9_]+")

    @classmethod
    def parse(cls, text: str) -> ModIdentity:
        """Parse `namespace-name` (the slot/display form)."""
        namespace, sep, name = str(text).strip().partition("-")
        if not sep:
            raise ValueError(f"Invalid mod identity {text!r}: expected 'namespace-name'")
        return cls(namespace, name)

    @property
    def slotName(self) -> str:
        """Directory name of this mod under the mods root."""
        return f"{self.namespace}-{self.name}"

    def sortKey(self) -> tuple[str, str, str, str]:
        return (self.namespace.lower(), self.name.lower(), self.namespace, self.name)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ModIdentity):
            return NotImplemented
        return self.sortKey() < other.sortKey()

    def __str__(self) -> str:
        return self.slotName



@dataclass(frozen=True)
class DependencySpec:
    target: ModIdentity
    constraint: VersionConstraint = field(default_factory=VersionConstraint.any)

    def __str__(self) -> str:
        return f"{self.target}@{self.constraint}"



@dataclass(frozen=True)
class ConflictSpec:
    """`target` matching `constraint` must not be installed/enabled alongside the declaring mod."""
    target: ModIdentity
    constraint: VersionConstraint = field(default_factory=VersionConstraint.any)

    def matches(self, identity: ModIdentity, version: ModVersion) -> bool:
        if identity != self.target:
            return False
        return self.constraint.isSatisfiedBy(version)

    def __str__(self) -> str:
        return f"{self.target}@{self.constraint}"



@dataclass(frozen=True)
class ModManifest:
    identity: ModIdentity
    version: ModVersion
    title: str
    dependencies: tuple[DependencySpec, ...] = ()
    conflicts: tuple[ConflictSpec, ...] = ()
    # Top-level directories expected inside the archive, None when undeclared
    layout: tuple[str, ...] | None = None
    description: str | None = None

    @property
    def label(self) -> str:
        return f"{self.identity}@{self.version}"

    def conflictsWith(self, identity: ModIdentity, version: ModVersion) -> bool:
        return any(spec.matches(identity, version) for spec in self.conflicts)
