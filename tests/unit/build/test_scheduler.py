"""Tests for RefreshScheduler and the background launch helpers."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from codeindex.build.coordinator import BuildCoordinator, BuildReport
from codeindex.build.scheduler import (
    RefreshScheduler,
    spawn_first_run,
    start_background_refresh,
    stop_background_refresh,
)
from codeindex.config import CodeIndexConfig
from codeindex.errors import BuildInProgressError, IndexIOError
from codeindex.store.analytics import AnalyticsStore
from codeindex.store.manifest import ANALYTICS_NAME, LOCK_NAME, MANIFEST_NAME


class _FakeCoordinator:
    def __init__(self, outcome: object = None) -> None:
        self.outcome = outcome
        self.calls: list[int | None] = []
        self.called = threading.Event()

    def build(self, force: bool = False, max_files: int | None = None) -> BuildReport:
        self.calls.append(max_files)
        self.called.set()
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return BuildReport(mode="noop")


# ---------------------------------------------------------------------------
# RefreshScheduler
# ---------------------------------------------------------------------------


def test_runs_at_most_once_per_interval() -> None:
    coordinator = _FakeCoordinator()
    scheduler = RefreshScheduler(coordinator, min_interval=300, max_files=7)

    assert scheduler.run_once(now=1000.0).mode == "noop"
    assert scheduler.run_once(now=1100.0) is None
    assert not scheduler.due(1299.0)
    assert scheduler.due(1300.0)
    assert scheduler.run_once(now=1300.0) is not None

    assert coordinator.calls == [7, 7]


def test_busy_lock_skips_quietly() -> None:
    scheduler = RefreshScheduler(_FakeCoordinator(BuildInProgressError(123, "t")))
    assert scheduler.run_once(now=0.0) is None
    assert scheduler.last_error is None


@pytest.mark.parametrize("error", [IndexIOError("disk full"), RuntimeError("bug")])
def test_failures_are_recorded_not_raised(error: Exception) -> None:
    scheduler = RefreshScheduler(_FakeCoordinator(error))

    assert scheduler.run_once(now=0.0) is None
    assert scheduler.last_error == str(error)
    # The failed pass still counts toward the interval.
    assert not scheduler.due(1.0)


def test_success_clears_last_error() -> None:
    coordinator = _FakeCoordinator(IndexIOError("disk full"))
    scheduler = RefreshScheduler(coordinator, min_interval=0)
    scheduler.run_once(now=0.0)

    coordinator.outcome = None
    report = scheduler.run_once(now=1.0)

    assert scheduler.last_error is None
    assert scheduler.last_report is report


def test_background_thread_runs_and_stops() -> None:
    coordinator = _FakeCoordinator()
    scheduler = RefreshScheduler(coordinator, min_interval=3600)

    scheduler.start()
    assert coordinator.called.wait(timeout=5)
    scheduler.trigger()
    scheduler.stop(timeout=5)

    assert coordinator.calls == [200]


# ---------------------------------------------------------------------------
# Launch helpers
# ---------------------------------------------------------------------------


def test_busy_tick_still_stamps_attempt(project: Path, cfg: CodeIndexConfig, embedder) -> None:
    import json
    import os

    index_dir = project / ".codeindex"
    index_dir.mkdir()
    (index_dir / LOCK_NAME).write_text(
        json.dumps({"pid": os.getpid(), "host": "", "started_at": "2026-01-01T00:00:00Z"}),
        encoding="utf-8",
    )
    scheduler = RefreshScheduler(BuildCoordinator(project, cfg, embedder=embedder))

    assert scheduler.run_once(now=0.0) is None
    assert AnalyticsStore(index_dir / ANALYTICS_NAME).read().last_attempt_ts is not None
    assert not (index_dir / MANIFEST_NAME).exists()


def test_first_run_builds_missing_index(
    project: Path, cfg: CodeIndexConfig, patch_shared_embedder
) -> None:
    thread = spawn_first_run(project, cfg)
    assert thread is not None
    thread.join(timeout=30)

    assert (project / ".codeindex" / MANIFEST_NAME).exists()
    assert spawn_first_run(project, cfg) is None


def test_first_run_respects_disabled_indexing(project: Path, cfg: CodeIndexConfig) -> None:
    cfg.index.enabled = False
    assert spawn_first_run(project, cfg) is None
    assert start_background_refresh(project, cfg) is None


def test_background_refresh_is_one_per_project(
    project: Path, cfg: CodeIndexConfig, patch_shared_embedder
) -> None:
    try:
        first = start_background_refresh(project, cfg)
        second = start_background_refresh(project, cfg)
        assert first is second
        assert first.max_files == cfg.refresh.max_files_per_pass
    finally:
        stop_background_refresh()
