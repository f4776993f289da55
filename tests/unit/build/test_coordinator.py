"""Tests for BuildCoordinator — full, incremental, and no-op passes."""

from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path

import pytest

from codeindex.build.coordinator import BuildCoordinator, BuildState
from codeindex.build.delta import file_sha256
from codeindex.build.verify import ProblemKind, Verifier
from codeindex.config import CodeIndexConfig
from codeindex.errors import BuildInProgressError, EncoderUnavailableError, IndexIOError
from codeindex.ingest.pathfilter import IGNORE_LIST_NAME
from codeindex.rag.retriever import Retriever
from codeindex.store.analytics import AnalyticsStore
from codeindex.store.manifest import (
    ANALYTICS_NAME,
    LOCK_NAME,
    MANIFEST_NAME,
    META_NAME,
    VECTORS_NAME,
    Manifest,
)
from codeindex.store.meta import MetaStore
from codeindex.store.models import chunk_id
from codeindex.store.vectors import VectorStore
from conftest import HashingEmbedder


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build(root: Path, cfg: CodeIndexConfig, embedder: HashingEmbedder, **kwargs):
    return BuildCoordinator(root, cfg, embedder=embedder).build(**kwargs)


def _meta(root: Path) -> MetaStore:
    return MetaStore.load(root / ".codeindex" / META_NAME)


def _manifest(root: Path) -> Manifest:
    return Manifest.load(root / ".codeindex" / MANIFEST_NAME)


def _content(meta: MetaStore) -> set[tuple[str, int, int, str]]:
    """Chunk content independent of ids."""
    return {(r.path, r.start, r.end, r.sha256) for r in meta}


def _git(root: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=root, shell=False, check=True, capture_output=True, text=True
    )
    return result.stdout


def _git_init(root: Path) -> None:
    _git(root, "init", "-q")
    _git(root, "config", "user.email", "dev@example.com")
    _git(root, "config", "user.name", "Dev")
    _git(root, "config", "commit.gpgsign", "false")
    _git(root, "add", "-A")
    _git(root, "commit", "-q", "-m", "initial")


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


class _BrokenEmbedder(HashingEmbedder):
    def _load(self) -> object:
        raise EncoderUnavailableError("model files missing")


# ---------------------------------------------------------------------------
# Full build
# ---------------------------------------------------------------------------


def test_first_build_is_full(project: Path, cfg: CodeIndexConfig, embedder) -> None:
    states: list[BuildState] = []
    report = BuildCoordinator(project, cfg, embedder=embedder, on_state=states.append).build()

    index_dir = project / ".codeindex"
    assert report.mode == "full"
    assert report.reasons == ["no index"]
    assert report.files_scanned == 3
    assert report.chunks_added >= 3
    for name in (MANIFEST_NAME, VECTORS_NAME, META_NAME, ANALYTICS_NAME, IGNORE_LIST_NAME):
        assert (index_dir / name).exists(), name
    assert not (index_dir / LOCK_NAME).exists()
    assert not list(index_dir.glob("*.tmp"))

    manifest = _manifest(project)
    assert manifest.generation == 1
    assert manifest.dim == embedder.dim
    assert manifest.counts == {"files": 3, "chunks": report.chunks_added}
    assert Verifier(index_dir).verify().ok

    assert states[0] is BuildState.LOCKING
    assert states[-1] is BuildState.IDLE
    assert BuildState.VERIFYING in states


def test_ids_derive_from_location_and_content(
    project: Path, cfg: CodeIndexConfig, embedder
) -> None:
    _build(project, cfg, embedder)
    records = list(_meta(project))

    assert records
    assert all(r.id == chunk_id(r.path, r.start, r.end, r.sha256) for r in records)
    assert [r.id for r in records] == sorted(r.id for r in records)


def test_forced_rebuild_is_byte_identical(project: Path, cfg: CodeIndexConfig, embedder) -> None:
    _build(project, cfg, embedder)
    first = (project / ".codeindex" / META_NAME).read_bytes()

    report = _build(project, cfg, embedder, force=True)

    assert report.mode == "full"
    assert report.reasons == ["forced"]
    assert (project / ".codeindex" / META_NAME).read_bytes() == first
    assert _manifest(project).generation == 2


def test_ignored_outputs_are_not_indexed(tmp_path: Path, cfg: CodeIndexConfig, embedder) -> None:
    root = tmp_path / "repo"
    (root / "dist").mkdir(parents=True)
    (root / "a.py").write_text(
        "def load(path):\n    \"\"\"Parse the widget manifest file.\"\"\"\n    return open(path).read()\n",
        encoding="utf-8",
    )
    (root / "b.py").write_text("def add(x, y):\n    return x + y\n", encoding="utf-8")
    (root / ".gitignore").write_text("dist/\n", encoding="utf-8")
    (root / "dist" / "out.bin").write_bytes(b"\x7fELF" + b"\x00" * 64)

    _build(root, cfg, embedder)

    assert _manifest(root).counts["files"] == 2
    assert _meta(root).paths() == ["a.py", "b.py"]

    result = Retriever(root, cfg, embedder=embedder).query("parse widget manifest")
    assert result.hits[0].rank == 1
    assert result.hits[0].path == "a.py"


# ---------------------------------------------------------------------------
# Incremental build
# ---------------------------------------------------------------------------


def test_unchanged_tree_is_noop(project: Path, cfg: CodeIndexConfig, embedder) -> None:
    _build(project, cfg, embedder)
    before = {
        name: (project / ".codeindex" / name).read_bytes()
        for name in (MANIFEST_NAME, VECTORS_NAME, META_NAME)
    }
    calls = embedder.calls

    report = _build(project, cfg, embedder)

    assert report.mode == "noop"
    assert embedder.calls == calls
    for name, data in before.items():
        assert (project / ".codeindex" / name).read_bytes() == data, name


def test_modified_file_replaces_only_its_chunks(
    project: Path, cfg: CodeIndexConfig, embedder
) -> None:
    _build(project, cfg, embedder)
    before = _meta(project)
    alpha_ids = [r.id for r in before.rows_for_path("src/alpha.py")]
    beta_ids = [r.id for r in before.rows_for_path("src/beta.py")]

    (project / "src" / "beta.py").write_text(
        "class Ledger:\n    def total(self):\n        return 0\n", encoding="utf-8"
    )
    report = _build(project, cfg, embedder)

    after = _meta(project)
    assert report.mode == "incremental"
    assert report.files_scanned == 1
    assert report.chunks_removed == len(beta_ids)
    assert [r.id for r in after.rows_for_path("src/alpha.py")] == alpha_ids
    assert not set(beta_ids) & set(after.ids())

    manifest = _manifest(project)
    assert manifest.generation == 2
    assert Verifier(project / ".codeindex").verify().ok


@requires_git
def test_edit_reverted_after_build_is_reindexed(
    project: Path, tmp_path: Path, cfg: CodeIndexConfig, embedder
) -> None:
    _git_init(project)
    beta = project / "src" / "beta.py"
    beta.write_text("def draft():\n    return 'wip'\n", encoding="utf-8")
    _build(project, cfg, embedder)
    assert _manifest(project).dirty == ["src/beta.py"]

    _git(project, "checkout", "--", "src/beta.py")
    report = _build(project, cfg, embedder)

    assert report.mode == "incremental"
    assert report.files_scanned == 1
    assert _manifest(project).dirty == []
    rows = _meta(project).rows_for_path("src/beta.py")
    assert {r.file_sha256 for r in rows} == {file_sha256(beta)}

    cfg_full = CodeIndexConfig()
    cfg_full.chunking = cfg.chunking
    cfg_full.index.dir = str(tmp_path / "fresh-index")
    _build(project, cfg_full, embedder)
    full = MetaStore.load(tmp_path / "fresh-index" / META_NAME)
    assert _meta(project).to_bytes() == full.to_bytes()


def test_deleted_file_is_dropped(project: Path, cfg: CodeIndexConfig, embedder) -> None:
    _build(project, cfg, embedder)
    (project / "README.md").unlink()

    report = _build(project, cfg, embedder)

    assert report.mode == "incremental"
    assert report.files_deleted == 1
    assert report.chunks_added == 0
    assert "README.md" not in _meta(project).paths()
    assert _manifest(project).counts["files"] == 2


def test_incremental_matches_full_rebuild(
    project: Path, tmp_path: Path, cfg: CodeIndexConfig, embedder
) -> None:
    _build(project, cfg, embedder)
    (project / "src" / "beta.py").write_text("def beta():\n    return 'b'\n", encoding="utf-8")
    (project / "src" / "gamma.py").write_text("def gamma():\n    return 'g'\n", encoding="utf-8")
    (project / "README.md").unlink()
    _build(project, cfg, embedder)
    incremental = _meta(project)

    cfg_full = CodeIndexConfig()
    cfg_full.chunking = cfg.chunking
    cfg_full.index.dir = str(tmp_path / "fresh-index")
    _build(project, cfg_full, embedder)
    full = MetaStore.load(tmp_path / "fresh-index" / META_NAME)

    assert _content(incremental) == _content(full)
    assert incremental.to_bytes() == full.to_bytes()
    query = Retriever(project, cfg, embedder=embedder).query("gamma", k=1)
    fresh = Retriever(project, cfg_full, embedder=embedder).query("gamma", k=1)
    assert query.hits[0].path == fresh.hits[0].path == "src/gamma.py"


def test_ignore_list_change_drops_files(project: Path, cfg: CodeIndexConfig, embedder) -> None:
    _build(project, cfg, embedder)
    with (project / ".codeindex" / IGNORE_LIST_NAME).open("a", encoding="utf-8") as fh:
        fh.write("*.md\n")

    report = _build(project, cfg, embedder)

    assert report.mode == "incremental"
    assert _meta(project).paths() == ["src/alpha.py", "src/beta.py"]


def test_max_files_defers_the_rest(project: Path, cfg: CodeIndexConfig, embedder) -> None:
    _build(project, cfg, embedder)
    for name in ("c.py", "d.py", "e.py"):
        (project / "src" / name).write_text(f"def {name[0]}():\n    pass\n", encoding="utf-8")

    first = _build(project, cfg, embedder, max_files=1)
    assert first.deferred == 2
    assert _manifest(project).pending == ["src/d.py", "src/e.py"]

    second = _build(project, cfg, embedder, max_files=1)
    assert second.deferred == 1
    third = _build(project, cfg, embedder, max_files=1)
    assert third.deferred == 0
    assert _manifest(project).pending == []

    assert _build(project, cfg, embedder).mode == "noop"
    assert set(_meta(project).paths()) >= {"src/c.py", "src/d.py", "src/e.py"}


def test_settings_change_forces_full_rebuild(
    project: Path, cfg: CodeIndexConfig, embedder
) -> None:
    _build(project, cfg, embedder)
    cfg.chunking.lines = 8

    report = _build(project, cfg, embedder)

    assert report.mode == "full"
    assert any("chunk lines" in r for r in report.reasons)
    assert _manifest(project).chunk["lines"] == 8


def test_dimension_change_forces_full_rebuild(
    project: Path, cfg: CodeIndexConfig, embedder
) -> None:
    _build(project, cfg, embedder)
    (project / "src" / "beta.py").write_text("x = 1\n", encoding="utf-8")

    report = _build(project, cfg, HashingEmbedder(dim=64))

    assert report.mode == "full"
    assert report.reasons == ["dimension changed"]
    assert _manifest(project).dim == 64
    assert Verifier(project / ".codeindex").verify().ok


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


def test_encoder_unavailable_writes_nothing(project: Path, cfg: CodeIndexConfig) -> None:
    states: list[BuildState] = []
    coordinator = BuildCoordinator(
        project, cfg, embedder=_BrokenEmbedder(), on_state=states.append
    )

    with pytest.raises(EncoderUnavailableError):
        coordinator.build()

    index_dir = project / ".codeindex"
    assert not (index_dir / MANIFEST_NAME).exists()
    assert not (index_dir / VECTORS_NAME).exists()
    assert not (index_dir / LOCK_NAME).exists()
    assert states[-2:] == [BuildState.FAILED, BuildState.IDLE]


def test_encoder_unavailable_keeps_previous_generation(
    project: Path, cfg: CodeIndexConfig, embedder
) -> None:
    _build(project, cfg, embedder)
    before = (project / ".codeindex" / MANIFEST_NAME).read_bytes()
    (project / "src" / "beta.py").write_text("x = 1\n", encoding="utf-8")

    with pytest.raises(EncoderUnavailableError):
        _build(project, cfg, _BrokenEmbedder())

    assert (project / ".codeindex" / MANIFEST_NAME).read_bytes() == before
    result = Retriever(project, cfg, embedder=embedder).query("quokka telemetry")
    assert result.hits


def test_failure_before_rename_leaves_previous_generation(
    project: Path, cfg: CodeIndexConfig, embedder, monkeypatch: pytest.MonkeyPatch
) -> None:
    _build(project, cfg, embedder)
    index_dir = project / ".codeindex"
    before = {
        name: (index_dir / name).read_bytes() for name in (MANIFEST_NAME, VECTORS_NAME, META_NAME)
    }
    (project / "src" / "gamma.py").write_text("g = 1\n", encoding="utf-8")

    def refuse(staged: Path, path: Path) -> None:
        raise IndexIOError("disk full")

    monkeypatch.setattr("codeindex.build.coordinator.commit", refuse)
    with pytest.raises(IndexIOError):
        _build(project, cfg, embedder)

    for name, data in before.items():
        assert (index_dir / name).read_bytes() == data, name
    assert not list(index_dir.glob("*.tmp"))
    assert not (index_dir / LOCK_NAME).exists()
    assert Verifier(index_dir).verify().ok


def test_partial_rename_is_detected_and_rebuilt(
    project: Path, cfg: CodeIndexConfig, embedder, monkeypatch: pytest.MonkeyPatch
) -> None:
    from codeindex.store import atomic

    _build(project, cfg, embedder)
    index_dir = project / ".codeindex"
    (project / "src" / "gamma.py").write_text("g = 1\n", encoding="utf-8")

    def vectors_only(staged: Path, path: Path) -> None:
        if path.name == META_NAME:
            raise IndexIOError("killed")
        atomic.commit(staged, path)

    monkeypatch.setattr("codeindex.build.coordinator.commit", vectors_only)
    with pytest.raises(IndexIOError):
        _build(project, cfg, embedder)
    monkeypatch.setattr("codeindex.build.coordinator.commit", atomic.commit)

    report = Verifier(index_dir).verify()
    assert ProblemKind.CHECKSUM_MISMATCH in report.kinds()

    rebuilt = _build(project, cfg, embedder)
    assert rebuilt.mode == "full"
    assert rebuilt.reasons[0].startswith("verification failed")
    assert Verifier(index_dir).verify().ok


def test_leftover_staged_files_do_not_break_queries(
    project: Path, cfg: CodeIndexConfig, embedder
) -> None:
    _build(project, cfg, embedder)
    index_dir = project / ".codeindex"
    (index_dir / (VECTORS_NAME + ".tmp")).write_bytes(b"half written")
    (index_dir / (META_NAME + ".tmp")).write_bytes(b'{"id": 0')

    assert Verifier(index_dir).verify().ok
    assert Retriever(project, cfg, embedder=embedder).query("ledger balance").hits

    (project / "src" / "gamma.py").write_text("g = 1\n", encoding="utf-8")
    assert _build(project, cfg, embedder).mode == "incremental"
    assert not list(index_dir.glob("*.tmp"))


def test_concurrent_build_rejected(project: Path, cfg: CodeIndexConfig, embedder) -> None:
    import os

    index_dir = project / ".codeindex"
    index_dir.mkdir()
    (index_dir / LOCK_NAME).write_text(
        json.dumps({"pid": os.getpid(), "host": "", "started_at": "2026-01-01T00:00:00Z"}),
        encoding="utf-8",
    )

    with pytest.raises(BuildInProgressError):
        _build(project, cfg, embedder)
    assert not (index_dir / MANIFEST_NAME).exists()


def test_vectors_and_meta_share_a_generation(
    project: Path, cfg: CodeIndexConfig, embedder
) -> None:
    _build(project, cfg, embedder)
    (project / "src" / "gamma.py").write_text("g = 1\n", encoding="utf-8")
    _build(project, cfg, embedder)

    manifest = _manifest(project)
    with VectorStore.open(project / ".codeindex" / VECTORS_NAME) as vectors:
        assert vectors.generation == manifest.generation == 2
        assert vectors.ids() == _meta(project).ids()


def test_every_attempt_is_stamped(project: Path, cfg: CodeIndexConfig, embedder) -> None:
    import os

    analytics = AnalyticsStore(project / ".codeindex" / ANALYTICS_NAME)
    _build(project, cfg, embedder)
    first = analytics.read().last_attempt_ts
    assert first is not None

    (project / ".codeindex" / ANALYTICS_NAME).write_text("{}", encoding="utf-8")
    assert _build(project, cfg, embedder).mode == "noop"
    assert analytics.read().last_attempt_ts is not None

    (project / ".codeindex" / ANALYTICS_NAME).write_text("{}", encoding="utf-8")
    (project / ".codeindex" / LOCK_NAME).write_text(
        json.dumps({"pid": os.getpid(), "host": "", "started_at": "2026-01-01T00:00:00Z"}),
        encoding="utf-8",
    )
    with pytest.raises(BuildInProgressError):
        _build(project, cfg, embedder)
    assert analytics.read().last_attempt_ts is not None
