"""Tests for the atomic write helpers."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from codeindex.errors import IndexIOError
from codeindex.store.atomic import (
    atomic_write_bytes,
    atomic_write_text,
    commit,
    sha256_bytes,
    sha256_file,
    tmp_path as staging_path,
    write_staged,
)


def test_staged_write_then_commit(tmp_path: Path) -> None:
    target = tmp_path / "vectors.hnsw"
    target.write_bytes(b"old")

    staged = write_staged(target, b"new")

    assert staged == staging_path(target)
    assert staged.name == "vectors.hnsw.tmp"
    assert target.read_bytes() == b"old"

    commit(staged, target)

    assert target.read_bytes() == b"new"
    assert not staged.exists()


def test_atomic_write_replaces_content(tmp_path: Path) -> None:
    target = tmp_path / "sub" / "manifest.json"
    atomic_write_text(target, "one")
    atomic_write_bytes(target, b"two")

    assert target.read_bytes() == b"two"
    assert sorted(p.name for p in target.parent.iterdir()) == ["manifest.json"]


def test_commit_missing_staged_file(tmp_path: Path) -> None:
    with pytest.raises(IndexIOError):
        commit(tmp_path / "absent.tmp", tmp_path / "target")


def test_sha256_helpers_agree(tmp_path: Path) -> None:
    data = b"x" * (3 * 1024 * 1024 + 7)
    path = tmp_path / "blob"
    path.write_bytes(data)

    assert sha256_file(path) == sha256_bytes(data) == hashlib.sha256(data).hexdigest()
