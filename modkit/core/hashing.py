# modkit/core/hashing.py
from __future__ import annotations

import hashlib
from pathlib import Path

__all__ = ["sha256Bytes", "sha256File", "normalizeSha256"]



def sha256Bytes(data: bytes) -> str:
    hsh = hashlib.sha256()
    hsh.update(data)
    return hsh.hexdigest()



def sha256File(path: str | Path) -> str:
    """Returns a SHA-256 hex digest of the file content, read in chunks."""
    sha = hashlib.sha256()
    with Path(path).open("rb") as file:
        for chunk in iter(lambda: file.read(65536), b""):
            sha.update(chunk)
    return sha.hexdigest()



def normalizeSha256(value: str | None) -> str | None:
    """
    Lowercases a hex digest and strips an optional "sha256:" prefix.
    Returns None for None/empty input, raises ValueError for anything that is not 64 hex chars.
    """
    if value is None:
        return None
    text = str(value).strip().lower()
    if text.startswith("sha256:"):
        text = text[len("sha256:"):]
    if not text:
        return None
    if len(text) != 64 or any(ch not in "0123456789abcdef" for ch in text):
        raise ValueError(f"Invalid SHA-256 digest {value!r}")
    return text
