# tests/modkit/resolver/test_resolver_pool.py
import hashlib

import pytest

from modkit.install.errors import UnsupportedArchiveError
from modkit.manifest.model import ModIdentity
from modkit.manifest.parser import MalformedManifestError, dumpManifest, manifestToMapping
from modkit.manifest.version import ModVersion
from modkit.resolver.pool import (
    LocalSource,
    ModPool,
    ModPoolEntry,
    RemoteSource,
    poolEntriesFromIndex,
    scanLocalArchives,
)


def _entry(makeManifest, identity: str, version: str, url: str | None = None) -> ModPoolEntry:
    return ModPoolEntry(makeManifest(identity, version), RemoteSource(url or f"https://mods.example/{identity}-{version}.zip"))


def test_versions_sorted_descending(makeManifest):
    pool = ModPool([_entry(makeManifest, "A-Mod", v) for v in ("1.0.0", "1.10.0", "1.2.0")])
    assert [str(v) for v in pool.availableVersions(ModIdentity("A", "Mod"))] == ["1.10.0", "1.2.0", "1.0.0"]
    assert len(pool) == 3
    assert ModIdentity("A", "Mod") in pool
    assert ModIdentity("A", "Other") not in pool


def test_first_entry_for_a_version_wins(makeManifest):
    local = ModPoolEntry(makeManifest("A-Mod", "1.0.0"), LocalSource("/tmp/A-Mod.zip"))
    remote = _entry(makeManifest, "A-Mod", "1.0.0")
    pool = ModPool.fromEntries([local], [remote])
    assert len(pool) == 1
    assert pool.get(ModIdentity("A", "Mod"), ModVersion(1, 0, 0)).source == local.source


def test_source_digest_is_normalized():
    digest = "AB" * 32
    source = RemoteSource("https://x/y.zip", sha256=f"sha256:{digest}")
    assert source.sha256 == digest.lower()
    with pytest.raises(ValueError):
        RemoteSource("https://x/y.zip", sha256="abc")
    with pytest.raises(ValueError):
        LocalSource("/tmp/x.zip", size=-1)


def test_index_entries_resolve_relative_urls(makeManifest):
    manifest = makeManifest("A-Mod", "1.0.0", deps=[("B-Lib", "^2.0")])
    document = [dict(manifestToMapping(manifest), url="files/A-Mod-1.0.0.zip", sha256="00" * 32, size=10)]

    (entry,) = poolEntriesFromIndex(document, baseUrl="https://mods.example/index/index.json")

    assert entry.manifest == manifest
    assert entry.source == RemoteSource("https://mods.example/index/files/A-Mod-1.0.0.zip", sha256="00" * 32, size=10)


@pytest.mark.parametrize("document", [
    {"not": "a list"},
    [{"namespace": "A", "name": "Mod", "version": "1.0.0"}],
    [{"namespace": "A", "name": "Mod", "version": "1.0.0", "url": "https://x", "size": "big"}],
])
def test_invalid_index_documents(document):
    with pytest.raises(MalformedManifestError):
        poolEntriesFromIndex(document)


def test_scan_local_archives(tmp_path, makeManifest, modArchive, zipBytes):
    inside = makeManifest("A-Inside", "1.0.0")
    data = modArchive(inside)
    (tmp_path / "A-Inside.zip").write_bytes(data)

    sidecar = makeManifest("A-Sidecar", "2.0.0", layout=["plugins"])
    (tmp_path / "sidecar.zip").write_bytes(zipBytes({"plugins/x.dll": "x"}))
    (tmp_path / "sidecar.zip.manifest.json5").write_bytes(dumpManifest(sidecar))

    (tmp_path / "broken.zip").write_bytes(b"not a zip")
    (tmp_path / "notes.txt").write_text("ignored")

    entries = scanLocalArchives(tmp_path)

    assert [entry.manifest for entry in entries] == [inside, sidecar]
    first = entries[0].source
    assert isinstance(first, LocalSource)
    assert first.size == len(data)
    assert first.sha256 == hashlib.sha256(data).hexdigest()


def test_scan_local_archives_strict_raises(tmp_path):
    (tmp_path / "broken.zip").write_bytes(b"not a zip")
    with pytest.raises(UnsupportedArchiveError):
        scanLocalArchives(tmp_path, strict=True)


def test_scan_missing_directory_is_empty(tmp_path):
    assert scanLocalArchives(tmp_path / "nope") == []
