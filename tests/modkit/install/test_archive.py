# tests/modkit/install/test_archive.py
import pytest

from modkit.core.cancel import CancelToken
from modkit.install.archive import (
    ArchiveFormat,
    detectFormat,
    extractArchive,
    listMembers,
    normalizeMemberPath,
    readMember,
)
from modkit.install.errors import (
    CorruptArchiveError,
    InstallCancelledError,
    UnsafePathError,
    UnsupportedArchiveError,
)


@pytest.mark.parametrize("name, expected", [
    ("Mod/plugin.dll", "Mod/plugin.dll"),
    ("./Mod//config/./a.cfg", "Mod/config/a.cfg"),
    ("Mod\\sub\\b.txt", "Mod/sub/b.txt"),
    ("Mod/", "Mod"),
    ("./", ""),
])
def test_normalize_member_path(name, expected):
    assert normalizeMemberPath(name) == expected


@pytest.mark.parametrize("name", [
    "../../etc/passwd",
    "Mod/../../escape.txt",
    "..\\evil.dll",
    "/etc/passwd",
    "\\\\server\\share\\x",
    "C:/Windows/evil.dll",
    "c:evil.dll",
    "Mod/a\x00b",
])
def test_unsafe_member_paths(name):
    with pytest.raises(UnsafePathError):
        normalizeMemberPath(name)


def test_detect_format(zipBytes, tarGzBytes):
    assert detectFormat(zipBytes({"a.txt": "a"})) is ArchiveFormat.ZIP
    assert detectFormat(tarGzBytes({"a.txt": "a"}), allowTarGz=True) is ArchiveFormat.TAR_GZ
    with pytest.raises(UnsupportedArchiveError):
        detectFormat(b"Rar!\x1a\x07\x00")


def test_tar_gz_is_gated_by_settings(tarGzBytes, writeSettings):
    data = tarGzBytes({"Mod/a.txt": "a"})
    with pytest.raises(UnsupportedArchiveError):
        listMembers(data)

    writeSettings({"archives": {"tarGzEnabled": True}})
    assert [member.path for member in listMembers(data)] == ["Mod/a.txt"]


def test_traversal_entry_rejected_before_any_write(tmp_path, zipBytes):
    # The safe member comes first; nothing at all may be extracted
    data = zipBytes({"Mod/ok.txt": "fine", "../../etc/passwd": "root::0:0"})
    dest = tmp_path / "dest"
    dest.mkdir()

    with pytest.raises(UnsafePathError) as info:
        extractArchive(data, dest)

    assert info.value.path == "../../etc/passwd"
    assert list(dest.iterdir()) == []
    assert not (tmp_path / "etc").exists()


def test_absolute_entry_rejected(tmp_path, zipBytes):
    dest = tmp_path / "dest"
    dest.mkdir()
    with pytest.raises(UnsafePathError):
        extractArchive(zipBytes({"/abs/evil.txt": "x"}), dest)
    assert list(dest.iterdir()) == []


def test_zip_symlink_rejected(tmp_path, zipBytes):
    dest = tmp_path / "dest"
    dest.mkdir()
    data = zipBytes({"Mod/a.txt": "a"}, symlinks={"Mod/link": "/etc/passwd"})
    with pytest.raises(UnsafePathError) as info:
        extractArchive(data, dest)
    assert "link" in info.value.reason
    assert list(dest.iterdir()) == []


def test_tar_symlink_rejected(tmp_path, tarGzBytes):
    dest = tmp_path / "dest"
    dest.mkdir()
    data = tarGzBytes({"Mod/a.txt": "a"}, symlinks={"Mod/link": "../../outside"})
    with pytest.raises(UnsafePathError):
        extractArchive(data, dest, allowTarGz=True)
    assert list(dest.iterdir()) == []


def test_tar_traversal_rejected(tmp_path, tarGzBytes):
    dest = tmp_path / "dest"
    dest.mkdir()
    with pytest.raises(UnsafePathError):
        extractArchive(tarGzBytes({"../evil.txt": "x"}), dest, allowTarGz=True)


def test_extract_zip(tmp_path, zipBytes):
    dest = tmp_path / "dest"
    dest.mkdir()
    data = zipBytes({"Mod/plugin.dll": b"\x00\x01", "Mod/config/a.cfg": "k=v"}, dirs=["Mod/empty"])

    members = extractArchive(data, dest)

    assert sorted(member.path for member in members) == ["Mod/config/a.cfg", "Mod/empty", "Mod/plugin.dll"]
    assert (dest / "Mod" / "plugin.dll").read_bytes() == b"\x00\x01"
    assert (dest / "Mod" / "config" / "a.cfg").read_text() == "k=v"
    assert (dest / "Mod" / "empty").is_dir()


def test_extract_tar_gz(tmp_path, tarGzBytes):
    dest = tmp_path / "dest"
    dest.mkdir()
    extractArchive(tarGzBytes({"Mod/readme.md": "# hi"}), dest, allowTarGz=True)
    assert (dest / "Mod" / "readme.md").read_text() == "# hi"


def test_extract_honors_cancellation(tmp_path, zipBytes):
    dest = tmp_path / "dest"
    dest.mkdir()
    token = CancelToken()
    token.cancel("stop")
    with pytest.raises(InstallCancelledError):
        extractArchive(zipBytes({"Mod/a.txt": "a"}), dest, cancel=token)
    assert list(dest.iterdir()) == []


def test_corrupt_zip():
    with pytest.raises(CorruptArchiveError):
        listMembers(b"PK\x03\x04" + b"\x00" * 40)


def test_read_member(zipBytes):
    data = zipBytes({"Mod/manifest.json5": "{}", "Mod/a.txt": "a"})
    assert readMember(data, "Mod/manifest.json5") == b"{}"
    assert readMember(data, "Mod/missing.txt") is None
    assert readMember(data, "Mod") is None
