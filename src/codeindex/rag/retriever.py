"""Retriever: embed a query, search the committed generation, gate by confidence.

The top-1 score decides what the caller gets:
  - score < threshold  → hits are still listed, but ``confident`` is False and
    no context block or summary is produced
  - score >= threshold → a ``<context>`` block bounded by the character budget
    (``context_budget`` tokens x 4 chars) and a one-line summary

Readers never take the build lock. The manifest is read first; the vector and
meta files must belong to the same generation or the load is retried.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from xml.sax.saxutils import escape, quoteattr

from codeindex.config import CodeIndexConfig
from codeindex.errors import (
    CodeIndexError,
    ConfigMismatchError,
    CorruptIndexError,
    IndexIOError,
    NoIndexError,
)
from codeindex.ingest.embedder import Embedder, shared_embedder
from codeindex.log import get_logger
from codeindex.store.analytics import AnalyticsStore
from codeindex.store.manifest import ANALYTICS_NAME, META_NAME, VECTORS_NAME, Manifest
from codeindex.store.meta import MetaStore
from codeindex.store.models import Hit
from codeindex.store.vectors import VectorStore

log = get_logger(__name__)

NO_MATCH_MESSAGE = "No information exists that matches the request."

_CHARS_PER_TOKEN = 4
_LOAD_ATTEMPTS = 3
_RETRY_DELAY = 0.05


@dataclass
class QueryResult:
    """Outcome of one query.

    Attributes:
        query: The query text.
        hits: Ranked hits (rank 1 first), present whether or not gated.
        threshold: Confidence gate in effect.
        top_score: Score of the best hit, 0.0 when there are none.
        confident: True when ``top_score >= threshold``.
        context: Bounded context block for a prompt, None when gated.
        summary: ``"<confidence>% confidence, <n> items"``, None when gated.
    """

    query: str
    hits: list[Hit] = field(default_factory=list)
    threshold: float = 0.0
    top_score: float = 0.0
    confident: bool = False
    context: str | None = None
    summary: str | None = None

    @property
    def message(self) -> str:
        return self.summary if self.confident and self.summary else NO_MATCH_MESSAGE


@dataclass
class _Snapshot:
    manifest: Manifest
    vectors: VectorStore
    meta: MetaStore


class Retriever:
    """Read-only query side of the index for one project.

    Args:
        root: Project root.
        cfg: Active configuration (index dir, model, metric, retrieval gate).
        embedder: Encoder; defaults to the process-wide shared one.
    """

    def __init__(
        self,
        root: Path,
        cfg: CodeIndexConfig,
        embedder: Embedder | None = None,
    ) -> None:
        self.root = root.resolve()
        self.cfg = cfg
        self.index_dir = cfg.index_dir(self.root)
        self._embedder = embedder
        self.analytics = AnalyticsStore(self.index_dir / ANALYTICS_NAME)

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = shared_embedder(
                self.cfg.index.model,
                batch_size=self.cfg.index.batch_size,
                offline=self.cfg.index.offline,
            )
        return self._embedder

    def query(self, text: str, k: int | None = None) -> QueryResult:
        """Search for *text* and apply the confidence gate.

        Raises:
            NoIndexError: No committed generation exists.
            ConfigMismatchError: The index was built with another model/dim/metric.
            CorruptIndexError: The artifacts could not be loaded consistently.
            EncoderUnavailableError: The model could not be loaded.
        """
        k = k if k is not None else self.cfg.retrieval.top_k
        threshold = self.cfg.retrieval.threshold
        snapshot = self._load_snapshot()
        try:
            vector = self.embedder.embed(text)
            ranked = snapshot.vectors.search(vector, k)
        finally:
            snapshot.vectors.close()

        hits: list[Hit] = []
        for chunk_id, score in ranked:
            record = snapshot.meta.get(chunk_id)
            if record is None:
                continue
            hits.append(
                Hit(
                    rank=len(hits) + 1,
                    id=chunk_id,
                    score=score,
                    path=record.path,
                    start=record.start,
                    end=record.end,
                    lang=record.lang,
                    preview=record.preview,
                )
            )

        top = hits[0].score if hits else 0.0
        result = QueryResult(query=text, hits=hits, threshold=threshold, top_score=top)
        result.confident = bool(hits) and top >= threshold
        if result.confident:
            result.context, included = format_context(
                text, hits, self.cfg.retrieval.context_budget * _CHARS_PER_TOKEN
            )
            result.summary = format_summary(top, included)

        try:
            self.analytics.record(result.confident)
        except CodeIndexError as exc:
            log.warning("analytics.write_failed", error=str(exc))

        log.debug(
            "retriever.query",
            hits=len(hits),
            top_score=round(top, 4),
            confident=result.confident,
        )
        return result

    def context_for(self, text: str) -> QueryResult | None:
        """Entry point for the chat bridge: a confident result or None.

        Never raises. Returns None when retrieval is disabled, when no usable
        index exists, when the top score is below the gate, or on any failure.
        """
        if not self.cfg.retrieval.enabled:
            return None
        try:
            result = self.query(text)
        except NoIndexError:
            return None
        except CodeIndexError as exc:
            log.warning("retriever.degraded", error=str(exc), kind=type(exc).__name__)
            return None
        except Exception as exc:
            log.exception("retriever.crashed", error=str(exc))
            return None
        return result if result.confident else None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load_snapshot(self) -> _Snapshot:
        last_error: Exception | None = None
        for attempt in range(_LOAD_ATTEMPTS):
            if attempt:
                time.sleep(_RETRY_DELAY)
            try:
                manifest = Manifest.load_optional(self.index_dir)
            except (CorruptIndexError, IndexIOError) as exc:
                last_error = exc
                continue
            if manifest is None:
                raise NoIndexError(f"no index in '{self.index_dir}'")

            reasons = manifest.incompatibilities(
                model=self.cfg.index.model,
                dim=self.embedder.dim,
                metric=self.cfg.index.metric,
            )
            if reasons:
                raise ConfigMismatchError(reasons)

            try:
                vectors = VectorStore.load(
                    self.index_dir / VECTORS_NAME,
                    ef_search=self.cfg.ann.ef_search,
                    exact_threshold=self.cfg.ann.exact_threshold,
                )
            except (CorruptIndexError, IndexIOError) as exc:
                last_error = exc
                continue
            try:
                meta = MetaStore.load(self.index_dir / META_NAME)
            except (CorruptIndexError, IndexIOError) as exc:
                vectors.close()
                last_error = exc
                continue

            if (
                vectors.generation == manifest.generation
                and len(vectors) == len(meta) == manifest.counts.get("chunks", -1)
            ):
                return _Snapshot(manifest, vectors, meta)
            vectors.close()
            last_error = CorruptIndexError(
                f"artifacts belong to different generations "
                f"(manifest {manifest.generation}, vectors {vectors.generation})"
            )
            log.debug("retriever.generation_race", attempt=attempt)

        raise CorruptIndexError(f"cannot load a consistent index: {last_error}")


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_summary(top_score: float, items: int) -> str:
    """E.g. ``"80% confidence, 3 items"``."""
    noun = "item" if items == 1 else "items"
    return f"{top_score:.0%} confidence, {items} {noun}"


def format_context(query: str, hits: list[Hit], budget_chars: int) -> tuple[str, int]:
    """Render hits as a ``<context>`` block no longer than *budget_chars*.

    Hits are added in rank order; the first one that does not fit has its
    preview cut to the remaining space, and later hits are dropped. Returns
    the block and the number of hits it contains.
    """
    head = f"<context query={quoteattr(query)}>\n"
    tail = "</context>"
    parts = [head]
    used = len(head) + len(tail)
    included = 0
    for hit in hits:
        open_tag = (
            f"<hit rank=\"{hit.rank}\" score=\"{hit.score:.3f}\" path={quoteattr(hit.path)} "
            f"start=\"{hit.start}\" end=\"{hit.end}\" lang={quoteattr(hit.lang)}>\n"
        )
        close_tag = "\n</hit>\n"
        body = escape(hit.preview)
        room = budget_chars - used - len(open_tag) - len(close_tag)
        if room <= 0:
            break
        if len(body) > room:
            cut = room
            while cut > 0 and len(escape(hit.preview[:cut])) > room:
                cut -= 1
            body = escape(hit.preview[:cut])
            parts.append(open_tag + body + close_tag)
            included += 1
            break
        parts.append(open_tag + body + close_tag)
        used += len(open_tag) + len(body) + len(close_tag)
        included += 1
    parts.append(tail)
    return "".join(parts), included
