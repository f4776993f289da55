"""Atomic file helpers: write to a temp path, fsync, then rename into place."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

from codeindex.errors import IndexIOError

_HASH_BLOCK = 1 << 20


def tmp_path(path: Path) -> Path:
    """Staging path used for *path* while a new generation is written."""
    return path.with_name(path.name + ".tmp")


def fsync_dir(directory: Path) -> None:
    """Flush directory entries so a completed rename survives power loss."""
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    except OSError:
        # Some filesystems refuse fsync on directories.
        pass
    finally:
        os.close(fd)


def write_staged(path: Path, data: bytes) -> Path:
    """Write *data* to ``tmp_path(path)`` and fsync it; returns the staged path."""
    staged = tmp_path(path)
    try:
        staged.parent.mkdir(parents=True, exist_ok=True)
        with staged.open("wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
    except OSError as exc:
        staged.unlink(missing_ok=True)
        raise IndexIOError(f"cannot write '{staged}': {exc}") from exc
    return staged


def commit(staged: Path, path: Path) -> None:
    """Atomically replace *path* with *staged*."""
    try:
        os.replace(staged, path)
    except OSError as exc:
        raise IndexIOError(f"cannot replace '{path}': {exc}") from exc
    fsync_dir(path.parent)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write *data* to *path* so readers see either the old or the new content."""
    commit(write_staged(path, data), path)


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Stream *path* through SHA-256 and return the hex digest."""
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        while block := fh.read(_HASH_BLOCK):
            digest.update(block)
    return digest.hexdigest()
