"""RefreshScheduler — background incremental builds with a minimum interval.

Background passes never raise: a failed pass is logged and the next due
trigger tries again. A pass that finds another build running simply skips.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path

from codeindex.build.coordinator import BuildCoordinator, BuildReport
from codeindex.config import CodeIndexConfig
from codeindex.errors import BuildInProgressError, CodeIndexError
from codeindex.log import get_logger
from codeindex.store.manifest import MANIFEST_NAME

log = get_logger(__name__)


class RefreshScheduler:
    """Run ``coordinator.build(max_files=...)`` at most once per ``min_interval``.

    Args:
        coordinator: Builder for the project.
        min_interval: Seconds that must pass between the starts of two passes.
        max_files: Per-pass cap on re-chunked files.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        coordinator: BuildCoordinator,
        min_interval: float = 300.0,
        max_files: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.coordinator = coordinator
        self.min_interval = min_interval
        self.max_files = max_files
        self._clock = clock
        self._last_run: float | None = None
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_error: str | None = None
        self.last_report: BuildReport | None = None

    def due(self, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        return self._last_run is None or now - self._last_run >= self.min_interval

    def run_once(self, now: float | None = None) -> BuildReport | None:
        """Run a pass if one is due; returns its report, or None if skipped or failed."""
        now = self._clock() if now is None else now
        if not self.due(now):
            return None
        self._last_run = now
        try:
            report = self.coordinator.build(max_files=self.max_files)
        except BuildInProgressError as exc:
            log.info("refresh.skipped", reason=str(exc))
            return None
        except CodeIndexError as exc:
            self.last_error = str(exc)
            log.warning("refresh.failed", error=str(exc), kind=type(exc).__name__)
            return None
        except Exception as exc:
            self.last_error = str(exc)
            log.exception("refresh.crashed", error=str(exc))
            return None
        self.last_error = None
        self.last_report = report
        return report

    def trigger(self) -> None:
        """Wake the background thread; the pass still honors ``min_interval``."""
        self._wake.set()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="codeindex-refresh", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            remaining = self.min_interval
            if self._last_run is not None:
                remaining = max(0.0, self.min_interval - (self._clock() - self._last_run))
            self._wake.wait(timeout=max(remaining, 1.0))
            self._wake.clear()


# ---------------------------------------------------------------------------
# Launcher helpers
# ---------------------------------------------------------------------------

_background: dict[Path, RefreshScheduler] = {}
_background_lock = threading.Lock()


def spawn_first_run(root: Path, cfg: CodeIndexConfig) -> threading.Thread | None:
    """Start a full build in a daemon thread when indexing is on and no index exists."""
    if not cfg.index.enabled:
        return None
    if (cfg.index_dir(root.resolve()) / MANIFEST_NAME).exists():
        return None

    def run() -> None:
        try:
            BuildCoordinator(root, cfg).build()
        except CodeIndexError as exc:
            log.warning("first_run.failed", error=str(exc), kind=type(exc).__name__)
        except Exception as exc:
            log.exception("first_run.crashed", error=str(exc))

    thread = threading.Thread(target=run, name="codeindex-first-run", daemon=True)
    thread.start()
    return thread


def start_background_refresh(root: Path, cfg: CodeIndexConfig) -> RefreshScheduler | None:
    """Start (once per process and project) the periodic refresh thread."""
    if not cfg.index.enabled:
        return None
    key = root.resolve()
    with _background_lock:
        scheduler = _background.get(key)
        if scheduler is None:
            scheduler = RefreshScheduler(
                BuildCoordinator(key, cfg),
                min_interval=cfg.refresh.min_interval,
                max_files=cfg.refresh.max_files_per_pass,
            )
            _background[key] = scheduler
        scheduler.start()
        return scheduler


def stop_background_refresh() -> None:
    with _background_lock:
        for scheduler in _background.values():
            scheduler.stop()
        _background.clear()
