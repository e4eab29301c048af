# modkit/manifest/parser.py
from __future__ import annotations

from typing import Any

import json5
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from modkit.core.errors import ModkitError
from modkit.manifest.model import ConflictSpec, DependencySpec, ModIdentity, ModManifest
from modkit.manifest.version import (
    VersionConstraint,
    parseModVersion,
    parseVersionConstraint,
)


__all__ = [
    "MANIFEST_NAMES",
    "ManifestError",
    "MissingFieldError",
    "BadVersionError",
    "SelfReferenceError",
    "MalformedManifestError",
    "ManifestDocument",
    "parseManifest",
    "manifestFromMapping",
    "manifestToMapping",
    "relationToMapping",
    "dumpManifest",
]



# Looked up in this order, inside an archive or next to it
MANIFEST_NAMES: tuple[str, ...] = ("manifest.json5", "manifest.json", "mod.json")



# ------------------------------------------------------------------ #
# Errors
# ------------------------------------------------------------------ #

class ManifestError(ModkitError, ValueError):
    """Base class for manifest errors. Never retried, surfaced to the caller verbatim."""



class MissingFieldError(ManifestError):
    def __init__(self, field: str) -> None:
        super().__init__(f"Manifest is missing required field {field!r}")
        self.field = field



class BadVersionError(ManifestError):
    def __init__(self, raw: str, reason: str | None = None) -> None:
        message = f"Malformed version {raw!r}"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.raw = raw



class SelfReferenceError(ManifestError):
    def __init__(self, identity: ModIdentity, relation: str) -> None:
        super().__init__(f"Mod {identity} declares a {relation} on itself")
        self.identity = identity
        self.relation = relation



class MalformedManifestError(ManifestError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Malformed manifest: {reason}")
        self.reason = reason



# ------------------------------------------------------------------ #
# Document schema
# ------------------------------------------------------------------ #

class RelationDocument(BaseModel):
    """One `{namespace, name, constraint}` entry of `dependencies` or `conflicts`."""
    model_config = ConfigDict(extra="ignore")

    namespace: str | None = Field(default=None, validation_alias=AliasChoices("namespace", "author"))
    name: str | None = None
    # Left untyped so a non-string version surfaces as BadVersionError
    constraint: Any = Field(default=None, validation_alias=AliasChoices("constraint", "version"))



class ManifestDocument(BaseModel):
    """
    Structural schema of a manifest document.

    Unknown keys are ignored so manifests written for other tools (website
    links, icons, ...) still parse. Thunderstore-style keys are accepted as
    aliases.
    """
    model_config = ConfigDict(extra="ignore")

    namespace: str | None = Field(default=None, validation_alias=AliasChoices("namespace", "author"))
    name: str | None = None
    version: Any = Field(default=None, validation_alias=AliasChoices("version", "version_number"))
    title: str | None = Field(default=None, validation_alias=AliasChoices("title", "display_name"))
    description: str | None = None
    dependencies: list[RelationDocument | str] = Field(default_factory=list)
    conflicts: list[RelationDocument | str] = Field(default_factory=list)
    layout: list[str] | None = None



# ------------------------------------------------------------------ #
# Parsing helpers
# ------------------------------------------------------------------ #

def _required(value: str | None, field: str) -> str:
    if value is None or not value.strip():
        raise MissingFieldError(field)
    return value.strip()



def _identity(namespace: str, name: str, field: str) -> ModIdentity:
    try:
        return ModIdentity(namespace, name)
    except ValueError as err:
        raise MalformedManifestError(f"{field}: {err}") from err



def _versionText(raw: Any) -> Any:
    if raw is not None and not isinstance(raw, str):
        raise BadVersionError(str(raw), f"expected a string, got {type(raw).__name__}")
    return raw



def _constraint(raw: Any) -> VersionConstraint:
    raw = _versionText(raw)
    try:
        return parseVersionConstraint(raw)
    except ValueError as err:
        raise BadVersionError(str(raw), str(err)) from err



def _parseRelationString(text: str, field: str) -> tuple[ModIdentity, VersionConstraint]:
    """
    Thunderstore dependency strings:

        "Author-Name-1.2.3" -> Author-Name at least 1.2.3
        "Author-Name"       -> Author-Name, any version
    """
    parts = text.strip().split("-")
    if len(parts) == 2:
        return _identity(parts[0], parts[1], field), VersionConstraint.any()
    if len(parts) == 3:
        try:
            version = parseModVersion(parts[2])
        except ValueError as err:
            raise BadVersionError(parts[2], str(err)) from err
        return _identity(parts[0], parts[1], field), VersionConstraint.atLeast(version)
    raise MalformedManifestError(f"{field}: cannot parse relation string {text!r}")



def _relations(entries: list[RelationDocument | str], field: str) -> list[tuple[ModIdentity, VersionConstraint]]:
    out: list[tuple[ModIdentity, VersionConstraint]] = []
    for idx, entry in enumerate(entries):
        entryField = f"{field}[{idx}]"
        if isinstance(entry, str):
            out.append(_parseRelationString(entry, entryField))
            continue
        namespace = _required(entry.namespace, f"{entryField}.namespace")
        name = _required(entry.name, f"{entryField}.name")
        out.append((_identity(namespace, name, entryField), _constraint(entry.constraint)))
    return out



def manifestFromMapping(raw: Any) -> ModManifest:
    """Validate an already-decoded manifest object. Raises ManifestError."""
    if not isinstance(raw, dict):
        raise MalformedManifestError(f"document must be an object, got {type(raw).__name__}")

    try:
        doc = ManifestDocument.model_validate(raw)
    except ValidationError as err:
        raise MalformedManifestError(str(err)) from err

    namespace = _required(doc.namespace, "namespace")
    name = _required(doc.name, "name")
    rawVersion = _required(_versionText(doc.version), "version")
    identity = _identity(namespace, name, "identity")

    try:
        version = parseModVersion(rawVersion)
    except ValueError as err:
        raise BadVersionError(rawVersion, str(err)) from err

    dependencies = tuple(DependencySpec(target, constraint) for target, constraint in _relations(doc.dependencies, "dependencies"))
    conflicts = tuple(ConflictSpec(target, constraint) for target, constraint in _relations(doc.conflicts, "conflicts"))

    if any(dep.target == identity for dep in dependencies):
        raise SelfReferenceError(identity, "dependency")
    if any(conflict.target == identity for conflict in conflicts):
        raise SelfReferenceError(identity, "conflict")

    layout: tuple[str, ...] | None = None
    if doc.layout is not None:
        cleaned: list[str] = []
        for entry in doc.layout:
            entry = entry.strip().strip("/")
            if not entry or "/" in entry or "\\" in entry or entry in (".", ".."):
                raise MalformedManifestError(f"layout entry {entry!r} must be a single directory name")
            cleaned.append(entry)
        layout = tuple(cleaned)

    title = (doc.title or "").strip() or name
    description = doc.description.strip() if doc.description and doc.description.strip() else None

    return ModManifest(
        identity=identity,
        version=version,
        title=title,
        dependencies=dependencies,
        conflicts=conflicts,
        layout=layout,
        description=description,
    )



def parseManifest(document: bytes | str) -> ModManifest:
    """
    Parse a relaxed JSON (JSON5) manifest document into a ModManifest.

    Comments, trailing commas and unquoted keys are accepted. Raises:
      - MissingFieldError for missing namespace/name/version
      - BadVersionError for malformed or non-string version and constraint values
      - SelfReferenceError for a dependency/conflict on the mod itself
      - MalformedManifestError for anything else that is not a valid manifest
    """
    if isinstance(document, (bytes, bytearray)):
        try:
            text = bytes(document).decode("utf-8-sig")
        except UnicodeDecodeError as err:
            raise MalformedManifestError(f"document is not UTF-8: {err}") from err
    else:
        text = document

    try:
        raw = json5.loads(text)
    except ValueError as err:
        raise MalformedManifestError(f"cannot decode document: {err}") from err

    return manifestFromMapping(raw)



# ------------------------------------------------------------------ #
# Serialization
# ------------------------------------------------------------------ #

def relationToMapping(target: ModIdentity, constraint: VersionConstraint) -> dict[str, str]:
    return {"namespace": target.namespace, "name": target.name, "constraint": constraint.text}



def manifestToMapping(manifest: ModManifest) -> dict[str, Any]:
    out: dict[str, Any] = {
        "namespace": manifest.identity.namespace,
        "name": manifest.identity.name,
        "version": str(manifest.version),
        "title": manifest.title,
    }
    if manifest.description is not None:
        out["description"] = manifest.description
    out["dependencies"] = [relationToMapping(dep.target, dep.constraint) for dep in manifest.dependencies]
    out["conflicts"] = [relationToMapping(spec.target, spec.constraint) for spec in manifest.conflicts]
    if manifest.layout is not None:
        out["layout"] = list(manifest.layout)
    return out



def dumpManifest(manifest: ModManifest) -> bytes:
    """Canonical JSON5 document; parseManifest(dumpManifest(m)) == m."""
    text = json5.dumps(manifestToMapping(manifest), ensure_ascii=False, indent=2, quote_keys=True, trailing_commas=False)
    return (text + "\n").encode("utf-8")
