"""VectorStore — approximate nearest-neighbor search over chunk vectors.

The graph is a faiss ``IndexHNSWFlat`` wrapped in ``IndexIDMap2`` so search
results carry chunk ids. Layer 0 holds up to ``2 * m`` links per node, upper
layers ``m``. faiss cannot drop nodes from an HNSW graph: removing ids marks
the graph stale and it is rebuilt from the stored vectors the next time it is
needed. Inserts into a current graph are added in place.

The raw vectors are also kept as a float32 matrix; the exact linear scan and
``vector()`` read it without touching the graph.

Scores are similarities (higher is better): the dot product of unit vectors
for ``cosine``, the raw dot product for ``ip``. Results are ordered by score
descending, then chunk id ascending.

On-disk layout of ``vectors.hnsw`` (little-endian):

    magic     8 bytes  b"CIXHNSW\\0"
    version   u32
    hlen      u32      length of the JSON header (padded to 8 bytes)
    header    JSON     dim, count, metric, m, ef_construction, ef_search,
                       generation, graph_bytes
    ids       int64[count]
    vectors   float32[count * dim]
    graph     faiss.serialize_index() of the IndexIDMap2
"""

from __future__ import annotations

import json
import struct
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

import faiss
import numpy as np

from codeindex.errors import CorruptIndexError, IndexIOError

MAGIC = b"CIXHNSW\x00"
FORMAT_VERSION = 2
_PREAMBLE = struct.Struct("<8sII")


class VectorStore:
    """Insert/remove/search over a fixed-dimension set of vectors keyed by chunk id.

    Args:
        dim: Vector dimensionality.
        metric: ``cosine`` (vectors normalized on insert) or ``ip``.
        m: HNSW links per node on layers >= 1; layer 0 allows ``2 * m``.
        ef_construction: Beam width while inserting.
        ef_search: Beam width while querying (raised to ``k`` when smaller).
        exact_threshold: Stores with at most this many vectors are searched by
            linear scan.
        generation: Build generation the store belongs to (persisted).
    """

    def __init__(
        self,
        dim: int,
        metric: str = "cosine",
        m: int = 16,
        ef_construction: int = 200,
        ef_search: int = 64,
        exact_threshold: int = 256,
        generation: int = 0,
    ) -> None:
        if dim < 1:
            raise ValueError(f"dim must be >= 1, got {dim}")
        if metric not in ("cosine", "ip"):
            raise ValueError(f"unsupported metric '{metric}'")
        if m < 2:
            raise ValueError(f"m must be >= 2, got {m}")
        self.dim = dim
        self.metric = metric
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self.exact_threshold = exact_threshold
        self.generation = generation

        self._vectors = np.zeros((0, dim), dtype=np.float32)
        self._count = 0
        self._ids: list[int] = []
        self._row_of: dict[int, int] = {}

        # Graph over rows [0, _graph_rows); None means "rebuild on demand".
        self._graph: faiss.Index | None = None
        self._graph_rows = 0

        # Read-only state when loaded from disk.
        self._readonly = False
        self._blob: np.ndarray | None = None
        self._mmap: np.memmap | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return self._count

    def __contains__(self, chunk_id: int) -> bool:
        return chunk_id in self._row_of

    @property
    def readonly(self) -> bool:
        return self._readonly

    def ids(self) -> list[int]:
        return sorted(self._row_of)

    def vector(self, chunk_id: int) -> np.ndarray:
        """Return a copy of the stored (normalized) vector for *chunk_id*."""
        return np.array(self._vectors[self._row_of[chunk_id]], dtype=np.float32)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def insert(self, chunk_id: int, vector: Sequence[float] | np.ndarray) -> None:
        """Add one vector. Raises ValueError on a duplicate id or wrong shape."""
        self.insert_many([chunk_id], np.asarray(vector, dtype=np.float32).reshape(1, -1))

    def insert_many(self, ids: Iterable[int], vectors: np.ndarray) -> None:
        """Add a batch of vectors; nothing is added if any id or row is invalid."""
        self._check_writable()
        ids = [int(i) for i in ids]
        if not ids:
            return
        block = np.array(vectors, dtype=np.float32).reshape(len(ids), -1)
        if block.shape[1] != self.dim:
            raise ValueError(f"expected {self.dim}-d vectors, got {block.shape[1]}-d")
        seen: set[int] = set()
        for chunk_id in ids:
            if chunk_id in self._row_of or chunk_id in seen:
                raise ValueError(f"duplicate chunk id {chunk_id}")
            seen.add(chunk_id)
        if self.metric == "cosine":
            faiss.normalize_L2(block)

        needed = self._count + len(ids)
        if needed > len(self._vectors):
            grown = np.zeros((max(16, 2 * needed), self.dim), dtype=np.float32)
            grown[: self._count] = self._vectors[: self._count]
            self._vectors = grown
        self._vectors[self._count : needed] = block
        for offset, chunk_id in enumerate(ids):
            self._row_of[chunk_id] = self._count + offset
        self._ids.extend(ids)
        self._count = needed

    def remove(self, chunk_id: int) -> None:
        self.remove_many([chunk_id])

    def remove_many(self, ids: Iterable[int]) -> None:
        """Remove vectors; the graph is rebuilt from the survivors when next used.

        Raises:
            KeyError: If an id is not in the store.
        """
        self._check_writable()
        gone = set()
        for chunk_id in ids:
            if chunk_id not in self._row_of:
                raise KeyError(f"unknown chunk id {chunk_id}")
            gone.add(self._row_of[chunk_id])
        if not gone:
            return

        keep = np.array(
            [row for row in range(self._count) if row not in gone], dtype=np.int64
        )
        self._vectors = np.array(self._vectors[keep], dtype=np.float32).reshape(-1, self.dim)
        self._ids = [self._ids[row] for row in keep.tolist()]
        self._row_of = {chunk_id: row for row, chunk_id in enumerate(self._ids)}
        self._count = len(self._ids)
        self._graph = None
        self._graph_rows = 0

    def mutable(self) -> VectorStore:
        """Return an owned, writable copy of this store (graph included)."""
        other = VectorStore(
            self.dim,
            metric=self.metric,
            m=self.m,
            ef_construction=self.ef_construction,
            ef_search=self.ef_search,
            exact_threshold=self.exact_threshold,
            generation=self.generation,
        )
        n = self._count
        other._vectors = np.array(self._vectors[:n], dtype=np.float32).reshape(-1, self.dim)
        other._count = n
        other._ids = list(self._ids)
        other._row_of = dict(self._row_of)
        if n:
            other._graph = faiss.deserialize_index(self._graph_bytes())
            other._graph_rows = n
        return other

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: Sequence[float] | np.ndarray, k: int) -> list[tuple[int, float]]:
        """Return up to *k* ``(id, score)`` pairs, best first.

        Small stores, and requests for at least every stored vector, use the
        exact linear scan; otherwise the HNSW graph is searched.
        """
        if k <= 0 or len(self) == 0:
            return []
        q = self._prepare(query)
        if k >= len(self) or len(self) <= self.exact_threshold:
            return self._scan(q, k)
        return self._search_ann(q, k)

    def search_exact(
        self, query: Sequence[float] | np.ndarray, k: int
    ) -> list[tuple[int, float]]:
        """Brute-force linear scan over every stored vector."""
        if k <= 0 or len(self) == 0:
            return []
        return self._scan(self._prepare(query), k)

    def recall_at_1(self, sample: int = 50, seed: int = 0) -> float:
        """Fraction of sample queries where the graph search agrees with the scan on top-1.

        Samples are stored vectors with small deterministic noise added.
        """
        if len(self) == 0:
            return 1.0
        rng = np.random.default_rng(seed)
        picks = rng.choice(self._count, size=min(sample, self._count), replace=False)
        agree = 0
        for pick in picks:
            sample_vec = self._vectors[int(pick)] + rng.normal(0.0, 0.05, self.dim)
            q = self._prepare(sample_vec)
            approx = self._search_ann(q, 1)
            exact = self._scan(q, 1)
            if approx and exact and approx[0][0] == exact[0][0]:
                agree += 1
        return agree / len(picks)

    def _scan(self, q: np.ndarray, k: int) -> list[tuple[int, float]]:
        sims = np.asarray(self._vectors[: self._count] @ q, dtype=np.float32)
        ids = np.asarray(self._ids, dtype=np.int64)
        order = np.lexsort((ids, -sims))[:k]
        return [(int(ids[i]), float(sims[i])) for i in order]

    def _search_ann(self, q: np.ndarray, k: int) -> list[tuple[int, float]]:
        graph = self._ensure_graph()
        faiss.downcast_index(graph.index).hnsw.efSearch = max(self.ef_search, k)
        scores, labels = graph.search(q.reshape(1, -1), k)
        hits = [
            (int(label), float(score))
            for label, score in zip(labels[0], scores[0])
            if label >= 0
        ]
        hits.sort(key=lambda h: (-h[1], h[0]))
        return hits

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _new_graph(self) -> faiss.IndexIDMap2:
        hnsw = faiss.IndexHNSWFlat(self.dim, self.m, faiss.METRIC_INNER_PRODUCT)
        hnsw.hnsw.efConstruction = self.ef_construction
        hnsw.hnsw.efSearch = self.ef_search
        return faiss.IndexIDMap2(hnsw)

    def _ensure_graph(self) -> faiss.Index:
        """The graph covering every stored row, built or extended as needed."""
        if self._graph is None and self._blob is not None:
            try:
                self._graph = faiss.deserialize_index(np.array(self._blob, dtype=np.uint8))
            except RuntimeError as exc:
                raise CorruptIndexError(f"HNSW graph is unreadable: {exc}") from exc
            self._graph_rows = self._count
        if self._graph is None:
            self._graph = self._new_graph()
            self._graph_rows = 0
        if self._graph_rows < self._count:
            rows = slice(self._graph_rows, self._count)
            self._graph.add_with_ids(
                np.ascontiguousarray(self._vectors[rows]),
                np.asarray(self._ids[rows], dtype=np.int64),
            )
            self._graph_rows = self._count
        return self._graph

    def _graph_bytes(self) -> np.ndarray:
        if self._graph is None and self._blob is not None:
            return np.array(self._blob, dtype=np.uint8)
        return faiss.serialize_index(self._ensure_graph())

    def _prepare(self, vector: Sequence[float] | np.ndarray) -> np.ndarray:
        vec = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vec.shape[0] != self.dim:
            raise ValueError(f"expected a {self.dim}-d vector, got {vec.shape[0]}-d")
        if self.metric == "cosine":
            norm = float(np.linalg.norm(vec))
            if norm > 0.0:
                vec = vec / norm
        return np.ascontiguousarray(vec, dtype=np.float32)

    def _check_writable(self) -> None:
        if self._readonly:
            raise TypeError("store is a read-only view; call mutable() first")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        """Serialize ids, vectors and the graph."""
        n = self._count
        graph = self._graph_bytes().tobytes() if n else b""
        header = json.dumps(
            {
                "dim": self.dim,
                "count": n,
                "metric": self.metric,
                "m": self.m,
                "ef_construction": self.ef_construction,
                "ef_search": self.ef_search,
                "generation": self.generation,
                "graph_bytes": len(graph),
            },
            sort_keys=True,
        ).encode("utf-8")
        header += b" " * (-(_PREAMBLE.size + len(header)) % 8)
        return b"".join(
            [
                _PREAMBLE.pack(MAGIC, FORMAT_VERSION, len(header)),
                header,
                np.asarray(self._ids, dtype="<i8").tobytes(),
                np.ascontiguousarray(self._vectors[:n], dtype="<f4").tobytes(),
                graph,
            ]
        )

    def save(self, path: Path) -> None:
        """Write the store to *path* directly (callers stage and rename)."""
        try:
            path.write_bytes(self.to_bytes())
        except OSError as exc:
            raise IndexIOError(f"cannot write '{path}': {exc}") from exc

    @classmethod
    def load(
        cls,
        path: Path,
        ef_search: int | None = None,
        exact_threshold: int | None = None,
    ) -> VectorStore:
        """Map *path* read-only and return a searchable view.

        The vectors are a ``numpy.memmap``; the graph is deserialized on the
        first approximate search. Call ``close()`` (or use ``VectorStore.open``)
        when done, and ``mutable()`` to edit.

        Raises:
            IndexIOError: If the file cannot be opened.
            CorruptIndexError: If the file is truncated or malformed.
        """
        try:
            buf = np.memmap(path, dtype=np.uint8, mode="r")
        except ValueError as exc:
            raise CorruptIndexError(f"cannot map '{path}': {exc}") from exc
        except OSError as exc:
            raise IndexIOError(f"cannot open '{path}': {exc}") from exc

        try:
            if len(buf) < _PREAMBLE.size:
                raise CorruptIndexError(f"'{path.name}' is truncated")
            magic, version, hlen = _PREAMBLE.unpack(bytes(buf[: _PREAMBLE.size]))
            if magic != MAGIC:
                raise CorruptIndexError(f"'{path.name}' is not a vector store file")
            if version != FORMAT_VERSION:
                raise CorruptIndexError(f"unsupported vector store version {version}")
            pos = _PREAMBLE.size
            header = json.loads(bytes(buf[pos : pos + hlen]).decode("utf-8"))
            pos += hlen

            n = int(header["count"])
            dim = int(header["dim"])
            store = cls(
                dim,
                metric=header["metric"],
                m=int(header["m"]),
                ef_construction=int(header["ef_construction"]),
                ef_search=ef_search if ef_search is not None else int(header["ef_search"]),
                exact_threshold=exact_threshold if exact_threshold is not None else 256,
                generation=int(header["generation"]),
            )

            def take(count: int, dtype: str) -> np.ndarray:
                nonlocal pos
                size = count * np.dtype(dtype).itemsize
                if pos + size > len(buf):
                    raise CorruptIndexError(f"'{path.name}' is truncated")
                view = buf[pos : pos + size].view(dtype)
                pos += size
                return view

            ids = take(n, "<i8")
            vectors = take(n * dim, "<f4").reshape(n, dim)
            blob = take(int(header["graph_bytes"]), "u1")
            if pos != len(buf):
                raise CorruptIndexError(f"'{path.name}' has {len(buf) - pos} trailing bytes")
        except CorruptIndexError:
            raise
        except (ValueError, KeyError, TypeError) as exc:
            raise CorruptIndexError(f"'{path.name}' is malformed: {exc}") from exc

        store._mmap = buf
        store._vectors = vectors
        store._count = n
        store._ids = ids.tolist()
        store._row_of = {chunk_id: row for row, chunk_id in enumerate(store._ids)}
        if len(store._row_of) != n:
            store.close()
            raise CorruptIndexError(f"'{path.name}' contains duplicate ids")
        store._blob = blob if n else None
        store._readonly = True
        return store

    @classmethod
    @contextmanager
    def open(cls, path: Path, **kwargs) -> Iterator[VectorStore]:
        """Read-only view of *path* whose mapping is released on exit."""
        store = cls.load(path, **kwargs)
        try:
            yield store
        finally:
            store.close()

    def close(self) -> None:
        """Release the file mapping; the store is empty afterwards."""
        if self._mmap is None:
            return
        self._vectors = np.zeros((0, self.dim), dtype=np.float32)
        self._count = 0
        self._ids = []
        self._row_of = {}
        self._graph = None
        self._graph_rows = 0
        self._blob = None
        self._mmap = None
