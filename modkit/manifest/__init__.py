# modkit/manifest/__init__.py
from .version import (
    ModVersion,
    ConstraintKind,
    VersionConstraint,
    parseModVersion,
    parseVersionConstraint,
)
from .model import ModIdentity, DependencySpec, ConflictSpec, ModManifest
from .parser import (
    MANIFEST_NAMES,
    ManifestError,
    MissingFieldError,
    BadVersionError,
    SelfReferenceError,
    MalformedManifestError,
    parseManifest,
    dumpManifest,
)
from .discovery import findManifestInArchive, findSidecarManifest

__all__ = [
    "ModVersion",
    "ConstraintKind",
    "VersionConstraint",
    "parseModVersion",
    "parseVersionConstraint",
    "ModIdentity",
    "DependencySpec",
    "ConflictSpec",
    "ModManifest",
    "MANIFEST_NAMES",
    "ManifestError",
    "MissingFieldError",
    "BadVersionError",
    "SelfReferenceError",
    "MalformedManifestError",
    "parseManifest",
    "dumpManifest",
    "findManifestInArchive",
    "findSidecarManifest",
]
