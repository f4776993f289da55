"""BuildCoordinator — full and incremental index builds.

A build walks the state machine

    IDLE → LOCKING → SCANNING → CHUNKING → EMBEDDING → WRITING → VERIFYING → IDLE

and drops to FAILED (then back to IDLE) on any error. New artifacts are
staged next to the committed ones as ``*.tmp``, checked, and renamed into
place with the manifest last, so a reader sees either the previous
generation or the new one.
"""

from __future__ import annotations

import enum
import hashlib
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from codeindex.build.delta import DeltaResolver, git_dirty_paths, git_head
from codeindex.build.lock import BuildLock
from codeindex.build.verify import Verifier, check_pair
from codeindex.config import CodeIndexConfig
from codeindex.errors import CodeIndexError, CorruptIndexError, IndexIOError
from codeindex.ingest import TieredChunker
from codeindex.ingest.base import Span
from codeindex.ingest.embedder import Embedder, shared_embedder
from codeindex.ingest.languages import language_for
from codeindex.ingest.pathfilter import IGNORE_LIST_NAME, IgnoreRuleSet, PathFilter
from codeindex.log import get_logger
from codeindex.store.analytics import AnalyticsStore
from codeindex.store.atomic import commit, sha256_bytes, tmp_path, write_staged
from codeindex.store.manifest import (
    ANALYTICS_NAME,
    MANIFEST_NAME,
    META_NAME,
    VECTORS_NAME,
    Manifest,
    utc_now,
)
from codeindex.store.meta import MetaStore
from codeindex.store.models import MetaRecord, chunk_id
from codeindex.store.vectors import VectorStore

log = get_logger(__name__)


class BuildState(str, enum.Enum):
    IDLE = "idle"
    LOCKING = "locking"
    SCANNING = "scanning"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    WRITING = "writing"
    VERIFYING = "verifying"
    FAILED = "failed"


@dataclass
class BuildReport:
    mode: str
    files_scanned: int = 0
    chunks_added: int = 0
    chunks_removed: int = 0
    files_deleted: int = 0
    deferred: int = 0
    duration: float = 0.0
    reasons: list[str] = field(default_factory=list)
    manifest: Manifest | None = None


@dataclass
class _FileChunks:
    path: str
    file_sha256: str
    lang: str
    spans: list[Span]


class BuildCoordinator:
    """Own the write side of the index for one project.

    Args:
        root: Project root.
        cfg: Active configuration.
        embedder: Encoder to use; defaults to the process-wide shared one.
        on_state: Called with every ``BuildState`` transition.
    """

    def __init__(
        self,
        root: Path,
        cfg: CodeIndexConfig,
        embedder: Embedder | None = None,
        on_state: Callable[[BuildState], None] | None = None,
    ) -> None:
        self.root = root.resolve()
        self.cfg = cfg
        self.index_dir = cfg.index_dir(self.root)
        self.embedder = embedder or shared_embedder(
            cfg.index.model, batch_size=cfg.index.batch_size, offline=cfg.index.offline
        )
        self.on_state = on_state
        self.state = BuildState.IDLE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build(self, force: bool = False, max_files: int | None = None) -> BuildReport:
        """Run one build pass.

        Args:
            force: Rebuild everything even if the index is reusable.
            max_files: Cap on files (re)chunked by an incremental pass; the
                rest are recorded as pending for the next pass.

        Raises:
            BuildInProgressError: Another process is building.
            EncoderUnavailableError: The model could not be loaded.
            IndexIOError: Reading or writing artifacts failed.
            CorruptIndexError: The staged generation failed its checks.
        """
        started = time.monotonic()
        self._record_attempt()
        lock = BuildLock(self.index_dir)
        self._transition(BuildState.LOCKING)
        try:
            lock.acquire()
        except CodeIndexError:
            self._transition(BuildState.IDLE)
            raise

        try:
            report = self._run(force, max_files)
        except BaseException as exc:
            self._transition(BuildState.FAILED)
            self._discard_staged()
            log.warning("build.failed", error=str(exc), kind=type(exc).__name__)
            self._transition(BuildState.IDLE)
            raise
        finally:
            lock.release()

        report.duration = time.monotonic() - started
        self._transition(BuildState.IDLE)
        log.info(
            "build.finished",
            mode=report.mode,
            files=report.files_scanned,
            added=report.chunks_added,
            removed=report.chunks_removed,
            deferred=report.deferred,
            duration_s=round(report.duration, 3),
        )
        return report

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _run(self, force: bool, max_files: int | None) -> BuildReport:
        self._transition(BuildState.SCANNING)
        rules = IgnoreRuleSet(self.index_dir / IGNORE_LIST_NAME)
        path_filter = PathFilter(
            self.root,
            rules,
            max_file_size=self.cfg.index.max_file_size,
            probe_bytes=self.cfg.index.probe_bytes,
        )
        previous = self._load_previous()
        reasons = self._full_build_reasons(previous, force)

        if not reasons:
            report = self._incremental(path_filter, previous, max_files)
            if report is not None:
                return report
            reasons = ["dimension changed"]
        return self._full(path_filter, previous, reasons)

    def _full(
        self, path_filter: PathFilter, previous: Manifest | None, reasons: list[str]
    ) -> BuildReport:
        log.info("build.full", reasons=reasons)
        head = git_head(self.root)
        files = list(path_filter.iter_eligible())
        self.embedder.ensure_loaded()
        dim = self.embedder.dim

        chunked = self._chunk_files(files)
        meta = MetaStore()
        vectors = self._new_vectors(dim)
        added = self._embed_into(chunked, meta, vectors)

        manifest = self._commit(
            meta,
            vectors,
            dim=dim,
            previous=previous,
            pending=[],
            fresh=True,
            git_sha=head,
        )
        return BuildReport(
            mode="full",
            files_scanned=len(files),
            chunks_added=added,
            reasons=reasons,
            manifest=manifest,
        )

    def _incremental(
        self, path_filter: PathFilter, previous: Manifest, max_files: int | None
    ) -> BuildReport | None:
        """Apply the delta to the committed generation; None means "go full"."""
        meta = MetaStore.load(self.index_dir / META_NAME)
        delta = DeltaResolver(self.root, path_filter).resolve(meta, previous)
        head = git_head(self.root)

        to_index = delta.to_index()
        deferred: list[str] = []
        if max_files is not None and len(to_index) > max_files:
            to_index, deferred = to_index[:max_files], to_index[max_files:]

        if delta.empty and not previous.pending:
            dirty = self._dirty_paths(meta, head)
            if head != previous.git_sha or dirty != previous.dirty:
                self._rewrite_manifest(previous, git_sha=head, dirty=dirty)
            log.info("build.noop")
            return BuildReport(mode="noop", manifest=previous)

        self.embedder.ensure_loaded()
        dim = self.embedder.dim
        if dim != previous.dim:
            return None

        log.info(
            "build.incremental",
            mode=delta.mode,
            added=len(delta.added),
            modified=len(delta.modified),
            deleted=len(delta.deleted),
            untracked=len(delta.untracked),
            deferred=len(deferred),
        )

        with VectorStore.open(
            self.index_dir / VECTORS_NAME,
            ef_search=self.cfg.ann.ef_search,
            exact_threshold=self.cfg.ann.exact_threshold,
        ) as committed:
            vectors = committed.mutable()

        chunked = self._chunk_files(to_index)

        stale = set(delta.deleted) | (set(delta.modified) & set(to_index))
        removed_ids = meta.remove_paths(stale)
        vectors.remove_many(removed_ids)

        added = self._embed_into(chunked, meta, vectors)
        manifest = self._commit(
            meta,
            vectors,
            dim=dim,
            previous=previous,
            pending=deferred,
            fresh=False,
            git_sha=head,
        )
        return BuildReport(
            mode="incremental",
            files_scanned=len(to_index),
            chunks_added=added,
            chunks_removed=len(removed_ids),
            files_deleted=len(delta.deleted),
            deferred=len(deferred),
            manifest=manifest,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _chunk_files(self, files: list[str]) -> list[_FileChunks]:
        """Chunk *files* on a worker pool; results keep the input order."""
        self._transition(BuildState.CHUNKING)
        chunker = TieredChunker(self.cfg.chunking)

        def work(rel: str) -> _FileChunks | None:
            try:
                data = (self.root / rel).read_bytes()
            except OSError as exc:
                log.warning("build.unreadable", path=rel, error=str(exc))
                return None
            lang = language_for(rel)
            text = data.decode("utf-8", errors="replace")
            tier, spans = chunker.chunk(text, lang)
            log.debug("build.chunked", path=rel, tier=tier, spans=len(spans))
            return _FileChunks(rel, hashlib.sha256(data).hexdigest(), lang, spans)

        with ThreadPoolExecutor(max_workers=self.cfg.index.workers) as pool:
            results = list(pool.map(work, sorted(files)))
        return [r for r in results if r is not None]

    def _embed_into(
        self,
        chunked: list[_FileChunks],
        meta: MetaStore,
        vectors: VectorStore,
    ) -> int:
        """Embed every span in (path, span) order and append it to both stores."""
        self._transition(BuildState.EMBEDDING)
        records: list[MetaRecord] = []
        texts: list[str] = []
        for item in chunked:
            for span in item.spans:
                digest = hashlib.sha256(span.text.encode("utf-8")).hexdigest()
                records.append(
                    MetaRecord(
                        id=chunk_id(item.path, span.start, span.end, digest),
                        path=item.path,
                        start=span.start,
                        end=span.end,
                        lang=item.lang,
                        sha256=digest,
                        preview=span.preview,
                        file_sha256=item.file_sha256,
                    )
                )
                texts.append(span.text)

        embeddings = self.embedder.embed_batch(texts)
        if len(embeddings) != len(records):
            raise CodeIndexError(
                f"encoder returned {len(embeddings)} vectors for {len(records)} chunks"
            )

        self._transition(BuildState.WRITING)
        meta.append(records)
        vectors.insert_many((r.id for r in records), embeddings)
        return len(records)

    def _commit(
        self,
        meta: MetaStore,
        vectors: VectorStore,
        *,
        dim: int,
        previous: Manifest | None,
        pending: list[str],
        fresh: bool,
        git_sha: str | None = None,
    ) -> Manifest:
        generation = (previous.generation + 1) if previous is not None else 1
        vectors.generation = generation
        vec_bytes = vectors.to_bytes()
        meta_bytes = meta.to_bytes()

        vectors_path = self.index_dir / VECTORS_NAME
        meta_path = self.index_dir / META_NAME
        staged_vectors = write_staged(vectors_path, vec_bytes)
        staged_meta = write_staged(meta_path, meta_bytes)

        self._transition(BuildState.VERIFYING)
        report = check_pair(staged_vectors, staged_meta, expected_dim=dim, expected_generation=generation)
        if not report.ok:
            raise CorruptIndexError(
                "staged index failed verification: " + "; ".join(map(str, report.problems))
            )

        manifest = Manifest(
            model=self.cfg.index.model,
            dim=dim,
            metric=self.cfg.index.metric,
            chunk_mode=self.cfg.chunking.mode,
            chunk={"lines": self.cfg.chunking.lines, "overlap": self.cfg.chunking.overlap},
            ann={
                "m": self.cfg.ann.m,
                "ef_construction": self.cfg.ann.ef_construction,
                "ef_search": self.cfg.ann.ef_search,
            },
            repo={
                "root": str(self.root),
                "git_sha": git_sha,
                "pending": sorted(pending),
                "dirty": self._dirty_paths(meta, git_sha),
            },
            counts={"files": len(meta.paths()), "chunks": len(meta)},
            checksums={"vectors": sha256_bytes(vec_bytes), "meta": sha256_bytes(meta_bytes)},
            generation=generation,
            created_at=previous.created_at if previous and not fresh else utc_now(),
        )
        manifest.touch(previous)

        commit(staged_vectors, vectors_path)
        commit(staged_meta, meta_path)
        manifest.save(self.index_dir / MANIFEST_NAME)
        AnalyticsStore(self.index_dir / ANALYTICS_NAME).ensure()
        return manifest

    def _rewrite_manifest(
        self, previous: Manifest, git_sha: str | None, dirty: list[str]
    ) -> None:
        """Record a new snapshot reference when no artifact changed."""
        previous.repo = {**previous.repo, "git_sha": git_sha, "pending": [], "dirty": dirty}
        previous.touch(previous)
        previous.save(self.index_dir / MANIFEST_NAME)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _full_build_reasons(self, previous: Manifest | None, force: bool) -> list[str]:
        if force:
            return ["forced"]
        if previous is None:
            return ["no index"]
        reasons = previous.incompatibilities(
            model=self.cfg.index.model,
            dim=None,
            metric=self.cfg.index.metric,
            chunk_mode=self.cfg.chunking.mode,
            lines=self.cfg.chunking.lines,
            overlap=self.cfg.chunking.overlap,
        )
        if reasons:
            return reasons
        report = Verifier(self.index_dir).verify()
        if not report.ok:
            log.warning("build.verify_failed", problems=[str(p) for p in report.problems])
            return [f"verification failed: {p}" for p in report.problems]
        return []

    def _dirty_paths(self, meta: MetaStore, git_sha: str | None) -> list[str]:
        """Indexed paths whose work-tree content differs from *git_sha*."""
        if git_sha is None:
            return []
        dirty = git_dirty_paths(self.root)
        if dirty is None:
            log.info("build.dirty_unavailable")
            return []
        return sorted(dirty & set(meta.paths()))

    def _load_previous(self) -> Manifest | None:
        try:
            return Manifest.load_optional(self.index_dir)
        except (CorruptIndexError, IndexIOError) as exc:
            log.warning("build.manifest_unreadable", error=str(exc))
            return None

    def _record_attempt(self) -> None:
        try:
            AnalyticsStore(self.index_dir / ANALYTICS_NAME).record_attempt()
        except OSError as exc:
            log.warning("build.attempt_unrecorded", error=str(exc))

    def _new_vectors(self, dim: int) -> VectorStore:
        return VectorStore(
            dim,
            metric=self.cfg.index.metric,
            m=self.cfg.ann.m,
            ef_construction=self.cfg.ann.ef_construction,
            ef_search=self.cfg.ann.ef_search,
            exact_threshold=self.cfg.ann.exact_threshold,
        )

    def _discard_staged(self) -> None:
        for name in (VECTORS_NAME, META_NAME):
            tmp_path(self.index_dir / name).unlink(missing_ok=True)

    def _transition(self, state: BuildState) -> None:
        self.state = state
        log.debug("build.state", state=state.value)
        if self.on_state is not None:
            self.on_state(state)
