"""Manifest — the authoritative descriptor of one committed index generation.

Readers load the manifest first: it names the model, dimension, and metric
the index was built with, and the checksums of the vectors and meta files
written by the same build. It is always the last file renamed into place.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from codeindex.errors import CorruptIndexError, IndexIOError
from codeindex.store.atomic import atomic_write_text

INDEX_VERSION = 2
ENGINE = "fastembed+faiss-hnsw"

MANIFEST_NAME = "manifest.json"
VECTORS_NAME = "vectors.hnsw"
META_NAME = "meta.jsonl"
ANALYTICS_NAME = "analytics.json"
LOCK_NAME = "lock"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


@dataclass
class Manifest:
    model: str
    dim: int
    metric: str = "cosine"
    chunk_mode: str = "auto"
    chunk: dict[str, int] = field(default_factory=lambda: {"lines": 160, "overlap": 32})
    ann: dict[str, int] = field(
        default_factory=lambda: {"m": 16, "ef_construction": 200, "ef_search": 64}
    )
    repo: dict[str, Any] = field(
        default_factory=lambda: {"root": "", "git_sha": None, "pending": [], "dirty": []}
    )
    counts: dict[str, int] = field(default_factory=lambda: {"files": 0, "chunks": 0})
    checksums: dict[str, str] = field(default_factory=lambda: {"vectors": "", "meta": ""})
    generation: int = 0
    created_at: str = field(default_factory=utc_now)
    last_refresh: str = field(default_factory=utc_now)
    index_version: int = INDEX_VERSION
    engine: str = ENGINE

    @property
    def git_sha(self) -> str | None:
        return self.repo.get("git_sha")

    @property
    def pending(self) -> list[str]:
        return list(self.repo.get("pending") or [])

    @property
    def dirty(self) -> list[str]:
        """Indexed paths with uncommitted edits when this generation was written."""
        return list(self.repo.get("dirty") or [])

    def incompatibilities(
        self,
        model: str,
        dim: int | None,
        metric: str,
        chunk_mode: str | None = None,
        lines: int | None = None,
        overlap: int | None = None,
    ) -> list[str]:
        """Reasons this generation cannot be reused with the given settings.

        An empty list means queries can be served and incremental builds
        can extend it. ``dim=None`` skips the dimension check (used before
        the encoder is loaded). Chunk settings are only compared when given.
        """
        reasons: list[str] = []
        if self.index_version != INDEX_VERSION:
            reasons.append(
                f"index version {self.index_version} (expected {INDEX_VERSION})"
            )
        if self.model != model:
            reasons.append(f"model '{self.model}' (active '{model}')")
        if dim is not None and self.dim != dim:
            reasons.append(f"dimension {self.dim} (active {dim})")
        if self.metric != metric:
            reasons.append(f"metric '{self.metric}' (active '{metric}')")
        if chunk_mode is not None and self.chunk_mode != chunk_mode:
            reasons.append(f"chunk mode '{self.chunk_mode}' (active '{chunk_mode}')")
        if lines is not None and self.chunk.get("lines") != lines:
            reasons.append(f"chunk lines {self.chunk.get('lines')} (active {lines})")
        if overlap is not None and self.chunk.get("overlap") != overlap:
            reasons.append(f"chunk overlap {self.chunk.get('overlap')} (active {overlap})")
        return reasons

    def touch(self, previous: Manifest | None = None) -> None:
        """Stamp ``last_refresh``; never earlier than *previous* recorded."""
        now = utc_now()
        if previous is not None and previous.last_refresh > now:
            now = previous.last_refresh
        self.last_refresh = now

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        try:
            return cls(
                model=str(data["model"]),
                dim=int(data["dim"]),
                metric=str(data.get("metric", "cosine")),
                chunk_mode=str(data.get("chunk_mode", "auto")),
                chunk=dict(data.get("chunk") or {}),
                ann=dict(data.get("ann") or {}),
                repo={
                    "root": "",
                    "git_sha": None,
                    "pending": [],
                    "dirty": [],
                    **dict(data.get("repo") or {}),
                },
                counts={"files": 0, "chunks": 0, **dict(data.get("counts") or {})},
                checksums=dict(data.get("checksums") or {}),
                generation=int(data.get("generation", 0)),
                created_at=str(data.get("created_at", "")),
                last_refresh=str(data.get("last_refresh", "")),
                index_version=int(data.get("index_version", 0)),
                engine=str(data.get("engine", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptIndexError(f"manifest.json is malformed: {exc}") from exc

    @classmethod
    def load(cls, path: Path) -> Manifest:
        """Read *path*.

        Raises:
            IndexIOError: If the file cannot be read.
            CorruptIndexError: If it is not a valid manifest.
        """
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise IndexIOError(f"cannot read '{path}': {exc}") from exc
        try:
            data = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CorruptIndexError(f"manifest.json is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise CorruptIndexError("manifest.json must contain an object")
        return cls.from_dict(data)

    @classmethod
    def load_optional(cls, index_dir: Path) -> Manifest | None:
        """Load ``<index_dir>/manifest.json`` or return None if it does not exist."""
        path = index_dir / MANIFEST_NAME
        if not path.exists():
            return None
        return cls.load(path)

    def save(self, path: Path) -> None:
        atomic_write_text(path, self.to_json())
