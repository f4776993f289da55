"""AnalyticsStore — query/hit/miss counters and build attempts in analytics.json."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import asdict, dataclass
from pathlib import Path

from codeindex.log import get_logger
from codeindex.store.atomic import commit
from codeindex.store.manifest import utc_now

log = get_logger(__name__)

_LOCK = threading.Lock()


@dataclass
class AnalyticsCounters:
    queries: int = 0
    hits: int = 0
    misses: int = 0
    last_query_ts: str | None = None
    last_attempt_ts: str | None = None

    @property
    def hit_ratio(self) -> float:
        return self.hits / self.queries if self.queries else 0.0


class AnalyticsStore:
    """Counters updated once per query with a read-modify-write + atomic replace.

    Writes never touch the build lock, so a query can record its outcome
    while a build is running.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> AnalyticsCounters:
        """Current counters; a missing or unreadable file reads as zeros."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return AnalyticsCounters(
                queries=int(data.get("queries", 0)),
                hits=int(data.get("hits", 0)),
                misses=int(data.get("misses", 0)),
                last_query_ts=data.get("last_query_ts"),
                last_attempt_ts=data.get("last_attempt_ts"),
            )
        except FileNotFoundError:
            return AnalyticsCounters()
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            log.warning("analytics.unreadable", path=str(self.path), error=str(exc))
            return AnalyticsCounters()

    def ensure(self) -> None:
        """Create the file with zero counters if it does not exist yet."""
        with _LOCK:
            if not self.path.exists():
                self._write(AnalyticsCounters())

    def record(self, hit: bool) -> AnalyticsCounters:
        """Count one query; *hit* is True when it passed the confidence gate."""
        with _LOCK:
            counters = self.read()
            counters.queries += 1
            if hit:
                counters.hits += 1
            counters.misses = counters.queries - counters.hits
            counters.last_query_ts = utc_now()
            self._write(counters)
            return counters

    def record_attempt(self) -> AnalyticsCounters:
        """Stamp the start of a build attempt, whatever its outcome turns out to be."""
        with _LOCK:
            counters = self.read()
            counters.last_attempt_ts = utc_now()
            self._write(counters)
            return counters

    def _write(self, counters: AnalyticsCounters) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            prefix=self.path.name + ".", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(asdict(counters), fh, indent=2, sort_keys=True)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            commit(Path(tmp), self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
