"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Sequence
from pathlib import Path

import numpy as np
import pytest

from codeindex.config import CodeIndexConfig
from codeindex.ingest.embedder import Embedder, reset_shared_embedder

_TOKEN = re.compile(r"[a-z_][a-z0-9_]*|\d+")


class HashingEmbedder(Embedder):
    """Deterministic bag-of-words encoder: each token hashes to a signed slot.

    Texts sharing rare tokens score high; unrelated texts score near zero.
    """

    def __init__(self, dim: int = 256, model_id: str = "bge-small") -> None:
        super().__init__(model_id, batch_size=16, offline=True)
        self._dim = dim
        self.calls = 0

    def _load(self) -> object:
        return object()

    def _encode(self, texts: list[str]) -> np.ndarray:
        self.calls += 1
        out = np.zeros((len(texts), self._dim), dtype=np.float32)
        for row, text in enumerate(texts):
            for token in _TOKEN.findall(text.lower()):
                h = int.from_bytes(hashlib.md5(token.encode()).digest()[:8], "little")
                out[row, h % self._dim] += 1.0 if (h >> 32) & 1 else -1.0
        return out


class TableEmbedder(Embedder):
    """Encoder returning fixed vectors per exact text (zeros otherwise)."""

    def __init__(self, table: dict[str, Sequence[float]], dim: int) -> None:
        super().__init__("bge-small", batch_size=16, offline=True)
        self._dim = dim
        self.table = table

    def _load(self) -> object:
        return object()

    def _encode(self, texts: list[str]) -> np.ndarray:
        out = np.zeros((len(texts), self._dim), dtype=np.float32)
        for row, text in enumerate(texts):
            if text in self.table:
                out[row] = np.asarray(self.table[text], dtype=np.float32)
        return out


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def cfg() -> CodeIndexConfig:
    """Default config with small chunk windows."""
    c = CodeIndexConfig()
    c.chunking.lines = 20
    c.chunking.overlap = 4
    c.index.workers = 2
    return c


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A small project tree: two source files and a README."""
    root = tmp_path / "proj"
    (root / "src").mkdir(parents=True)
    (root / "src" / "alpha.py").write_text(
        "import os\n\n\n"
        "def zanzibar_quokka_telemetry(frames):\n"
        "    \"\"\"Collect quokka telemetry frames from zanzibar.\"\"\"\n"
        "    return [f for f in frames if f]\n",
        encoding="utf-8",
    )
    (root / "src" / "beta.py").write_text(
        "class Ledger:\n"
        "    def balance(self, entries):\n"
        "        return sum(e.amount for e in entries)\n",
        encoding="utf-8",
    )
    (root / "README.md").write_text(
        "# Project\n\nAccounting helpers.\n\n\nSee src/ for details.\n",
        encoding="utf-8",
    )
    return root


@pytest.fixture(autouse=True)
def _no_shared_embedder(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Never touch a real model or the user's global config from tests."""
    monkeypatch.setattr("codeindex.config._GLOBAL_CONFIG_PATH", tmp_path / "no-global.yaml")
    for var in (
        "CODEINDEX_INDEXING",
        "CODEINDEX_RETRIEVAL",
        "CODEINDEX_RETRIEVAL_THRESHOLD",
        "CODEINDEX_MODEL",
        "CODEINDEX_REFRESH_INTERVAL",
        "CODEINDEX_CHUNK_LINES",
        "CODEINDEX_CHUNK_OVERLAP",
        "CODEINDEX_MAX_FILE_SIZE",
        "CODEINDEX_CONTEXT_BUDGET",
        "CODEINDEX_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    yield
    reset_shared_embedder()


@pytest.fixture
def patch_shared_embedder(monkeypatch: pytest.MonkeyPatch, embedder: HashingEmbedder):
    """Route every shared_embedder() lookup to the hashing encoder."""
    fake = lambda *args, **kwargs: embedder  # noqa: E731
    monkeypatch.setattr("codeindex.build.coordinator.shared_embedder", fake)
    monkeypatch.setattr("codeindex.rag.retriever.shared_embedder", fake)
    return embedder

