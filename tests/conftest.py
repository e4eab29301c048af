import io
import sys
import tarfile
import zipfile
from collections.abc import Iterable
from pathlib import Path

import json5
import pytest

from modkit.config.settings import SETTINGS_ENV_VAR, reloadSettings
from modkit.install.tree import ModTree
from modkit.locate.game import GAME_DIR_ENV_VAR
from modkit.manifest.model import ConflictSpec, DependencySpec, ModIdentity, ModManifest
from modkit.manifest.parser import dumpManifest
from modkit.manifest.version import parseModVersion, parseVersionConstraint



def pytest_configure(config: pytest.Config) -> None:
    if sys.flags.optimize:
        raise RuntimeError("Assertions are disabled (optimize > 0)")



@pytest.fixture(autouse=True)
def isolatedSettings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Every test starts from built-in defaults, never from the developer's ~/.modkit."""
    monkeypatch.setenv(SETTINGS_ENV_VAR, str(tmp_path / "settings" / "modkit.json5"))
    monkeypatch.delenv(GAME_DIR_ENV_VAR, raising=False)
    reloadSettings()
    yield
    reloadSettings()



@pytest.fixture
def writeSettings(tmp_path: Path):
    """Write a user settings overlay and make it active."""
    def _write(overlay: dict) -> Path:
        path = tmp_path / "settings" / "modkit.json5"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json5.dumps(overlay), encoding="utf-8")
        reloadSettings()
        return path
    return _write



@pytest.fixture
def tree(tmp_path: Path) -> ModTree:
    return ModTree.at(tmp_path / "game")



# ---- Archive builders ---- #

def _zipBytes(files: dict[str, bytes | str], *, dirs: Iterable[str] = (), symlinks: dict[str, str] | None = None) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name in dirs:
            zf.writestr(name.rstrip("/") + "/", b"")
        for name, content in files.items():
            zf.writestr(name, content.encode("utf-8") if isinstance(content, str) else content)
        for name, target in (symlinks or {}).items():
            info = zipfile.ZipInfo(name)
            # 0o120777: symlink file type with rwx permissions
            info.external_attr = 0o120777 << 16
            zf.writestr(info, target)
    return buffer.getvalue()



def _tarGzBytes(files: dict[str, bytes | str], *, symlinks: dict[str, str] | None = None) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        for name, content in files.items():
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tf.addfile(info)
    return buffer.getvalue()



@pytest.fixture
def zipBytes():
    return _zipBytes



@pytest.fixture
def tarGzBytes():
    return _tarGzBytes



# ---- Manifest builders ---- #

def _relations(specs: Iterable[str | tuple[str, str]], cls):
    out = []
    for spec in specs:
        if isinstance(spec, tuple):
            target, constraint = spec
        else:
            target, constraint = spec, None
        out.append(cls(ModIdentity.parse(target), parseVersionConstraint(constraint)))
    return tuple(out)



def _makeManifest(
    identity: str,
    version: str = "1.0.0",
    *,
    deps: Iterable[str | tuple[str, str]] = (),
    conflicts: Iterable[str | tuple[str, str]] = (),
    layout: Iterable[str] | None = None,
    title: str | None = None,
) -> ModManifest:
    ident = ModIdentity.parse(identity)
    return ModManifest(
        identity=ident,
        version=parseModVersion(version),
        title=title or ident.name,
        dependencies=_relations(deps, DependencySpec),
        conflicts=_relations(conflicts, ConflictSpec),
        layout=tuple(layout) if layout is not None else None,
    )



@pytest.fixture
def makeManifest():
    """makeManifest("Ns-Name", "1.2.0", deps=[("Ns-Dep", ">=1.0")], conflicts=["Ns-Other"])"""
    return _makeManifest



def _modArchive(manifest: ModManifest, files: dict[str, bytes | str] | None = None) -> bytes:
    """Zip with a single top-level directory holding manifest.json5 plus `files`."""
    root = manifest.identity.slotName
    content: dict[str, bytes | str] = {f"{root}/manifest.json5": dumpManifest(manifest)}
    for rel, data in (files if files is not None else {"plugin.dll": f"{manifest.label}"}).items():
        content[f"{root}/{rel}"] = data
    return _zipBytes(content)



@pytest.fixture
def modArchive():
    return _modArchive
