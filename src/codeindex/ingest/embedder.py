"""Embedder — local text encoder wrapper (fastembed / ONNX).

The encoder is loaded lazily on first use and never downloads anything when
``offline`` is set: the model must already be in the fastembed cache. A
load failure is reported as ``EncoderUnavailableError`` so a build can abort
before it writes anything.
"""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Sequence
from typing import Any

import numpy as np

from codeindex.errors import EncoderUnavailableError
from codeindex.log import get_logger

log = get_logger(__name__)

# Short aliases accepted on the command line → (fastembed model name, dimension).
MODEL_ALIASES: dict[str, tuple[str, int]] = {
    "bge-small": ("BAAI/bge-small-en-v1.5", 384),
    "bge-small-en-v1.5": ("BAAI/bge-small-en-v1.5", 384),
    "bge-large": ("BAAI/bge-large-en-v1.5", 1024),
    "bge-large-en-v1.5": ("BAAI/bge-large-en-v1.5", 1024),
}

_DEFAULT_BATCH_SIZE = 64


def resolve_model(model_id: str) -> tuple[str, int | None]:
    """Return ``(fastembed model name, known dimension or None)`` for *model_id*."""
    if model_id in MODEL_ALIASES:
        return MODEL_ALIASES[model_id]
    return model_id, None


class Embedder:
    """Turn texts into fixed-dimension float32 vectors.

    Args:
        model_id: Alias (``bge-small``) or full fastembed model name.
        batch_size: Upper bound on texts sent to the encoder per call.
        offline: Only load model files already present in the local cache.
        cache_dir: Override the fastembed cache directory.
    """

    def __init__(
        self,
        model_id: str = "bge-small",
        batch_size: int = _DEFAULT_BATCH_SIZE,
        offline: bool = True,
        cache_dir: str | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.model_id = model_id
        self.batch_size = batch_size
        self.offline = offline
        self.cache_dir = cache_dir or os.environ.get("FASTEMBED_CACHE_PATH")
        self._model: Any = None
        self._dim: int | None = resolve_model(model_id)[1]
        self._lock = threading.Lock()

    @property
    def engine(self) -> str:
        return "fastembed"

    @property
    def dim(self) -> int:
        """Vector dimensionality; loads the encoder if it is not yet known."""
        if self._dim is None:
            self.ensure_loaded()
            probe = self._encode(["dimension probe"])
            self._dim = int(probe.shape[1])
        return self._dim

    def ensure_loaded(self) -> None:
        """Load the encoder now.

        Raises:
            EncoderUnavailableError: If the model cannot be loaded.
        """
        with self._lock:
            if self._model is None:
                self._model = self._load()

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text; returns a 1-D float32 vector."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        """Embed *texts* in order; returns an ``(n, dim)`` float32 matrix."""
        if not texts:
            return np.zeros((0, self.dim), dtype=np.float32)
        self.ensure_loaded()
        parts = [
            self._encode(list(texts[i : i + self.batch_size]))
            for i in range(0, len(texts), self.batch_size)
        ]
        matrix = np.vstack(parts).astype(np.float32, copy=False)
        if self._dim is None:
            self._dim = int(matrix.shape[1])
        return matrix

    def close(self) -> None:
        """Release the loaded encoder."""
        with self._lock:
            self._model = None

    # ------------------------------------------------------------------
    # Backend
    # ------------------------------------------------------------------

    def _load(self) -> Any:
        model_name, _ = resolve_model(self.model_id)
        start = time.monotonic()
        try:
            from fastembed import TextEmbedding

            kwargs: dict[str, Any] = {"model_name": model_name}
            if self.cache_dir:
                kwargs["cache_dir"] = self.cache_dir
            if self.offline:
                kwargs["local_files_only"] = True
            model = TextEmbedding(**kwargs)
        except Exception as exc:
            log.warning("embedder.load_failed", model=model_name, error=str(exc))
            raise EncoderUnavailableError(
                f"cannot load embedding model '{model_name}': {exc}"
            ) from exc
        log.info(
            "embedder.loaded",
            model=model_name,
            elapsed_s=round(time.monotonic() - start, 2),
        )
        return model

    def _encode(self, texts: list[str]) -> np.ndarray:
        vectors = list(self._model.embed(texts, batch_size=self.batch_size))
        return np.asarray(vectors, dtype=np.float32)


# ---------------------------------------------------------------------------
# Process-wide shared instance
# ---------------------------------------------------------------------------

_shared: Embedder | None = None
_shared_lock = threading.Lock()


def shared_embedder(
    model_id: str,
    batch_size: int = _DEFAULT_BATCH_SIZE,
    offline: bool = True,
) -> Embedder:
    """Return the process-wide Embedder, replacing it if *model_id* changed."""
    global _shared
    with _shared_lock:
        if _shared is not None and _shared.model_id != model_id:
            log.info("embedder.reload", old=_shared.model_id, new=model_id)
            _shared.close()
            _shared = None
        if _shared is None:
            _shared = Embedder(model_id, batch_size=batch_size, offline=offline)
        return _shared


def reset_shared_embedder() -> None:
    """Tear down the process-wide Embedder (next call to shared_embedder reloads)."""
    global _shared
    with _shared_lock:
        if _shared is not None:
            _shared.close()
        _shared = None
