"""codeindex configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (CODEINDEX_*)
  3. Per-project codeindex.yaml  (in the project root)
  4. Global ~/.codeindex/config.yaml
  5. Hardcoded defaults

All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".codeindex"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "codeindex.yaml"

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["index", "chunking", "ann", "retrieval", "refresh", "logging"]
)

_METRICS: frozenset[str] = frozenset(["cosine", "ip"])
_CHUNK_MODES: frozenset[str] = frozenset(["auto", "lines"])
_OFF_VALUES: frozenset[str] = frozenset(["0", "off", "false", "no"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


def _default_workers() -> int:
    return max(1, min(8, os.cpu_count() or 1))


@dataclass
class IndexCfg:
    """Index location, model, and scan limits (codeindex.yaml: index:)."""

    enabled: bool = True
    dir: str = ".codeindex"
    model: str = "bge-small"
    metric: str = "cosine"
    max_file_size: int = 5 * 1024 * 1024
    probe_bytes: int = 8192
    workers: int = field(default_factory=_default_workers)
    batch_size: int = 64
    offline: bool = True


@dataclass
class ChunkingCfg:
    """Chunk window configuration (codeindex.yaml: chunking:).

    Attributes:
        mode: ``auto`` runs the structural → paragraph → fixed-window tiers,
            ``lines`` forces fixed windows.
        lines: Target span length in lines.
        overlap: Lines of context repeated at each span boundary.
        paragraph_gap: Consecutive blank lines that end a paragraph.
    """

    mode: str = "auto"
    lines: int = 160
    overlap: int = 32
    paragraph_gap: int = 2


@dataclass
class AnnCfg:
    """HNSW build and query parameters (codeindex.yaml: ann:)."""

    m: int = 16
    ef_construction: int = 200
    ef_search: int = 64
    exact_threshold: int = 256


@dataclass
class RetrievalCfg:
    """Retrieval gating configuration (codeindex.yaml: retrieval:)."""

    enabled: bool = True
    threshold: float = 0.60
    top_k: int = 5
    context_budget: int = 2_048


@dataclass
class RefreshCfg:
    """Background refresh policy (codeindex.yaml: refresh:)."""

    min_interval: float = 300.0
    max_files_per_pass: int = 200


@dataclass
class LoggingCfg:
    """Structured log output (codeindex.yaml: logging:)."""

    level: str = "WARNING"
    file: str | None = None


@dataclass
class CodeIndexConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    index: IndexCfg = field(default_factory=IndexCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    ann: AnnCfg = field(default_factory=AnnCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    refresh: RefreshCfg = field(default_factory=RefreshCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)

    def index_dir(self, root: Path) -> Path:
        """Return the absolute index directory for project *root*."""
        path = Path(self.index.dir)
        return path if path.is_absolute() else root / path


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _OFF_VALUES
    return bool(value)


def validate(cfg: CodeIndexConfig) -> CodeIndexConfig:
    """Raise ConfigError if *cfg* holds a value the index cannot work with."""
    if cfg.index.metric not in _METRICS:
        raise ConfigError(
            f"index.metric must be one of {sorted(_METRICS)}, got '{cfg.index.metric}'"
        )
    if cfg.chunking.mode not in _CHUNK_MODES:
        raise ConfigError(
            f"chunking.mode must be one of {sorted(_CHUNK_MODES)}, got '{cfg.chunking.mode}'"
        )
    if cfg.chunking.lines < 1:
        raise ConfigError(f"chunking.lines must be >= 1, got {cfg.chunking.lines}")
    if cfg.chunking.overlap < 0:
        raise ConfigError(f"chunking.overlap must be >= 0, got {cfg.chunking.overlap}")
    if cfg.chunking.paragraph_gap < 1:
        raise ConfigError(
            f"chunking.paragraph_gap must be >= 1, got {cfg.chunking.paragraph_gap}"
        )
    if cfg.index.max_file_size < 1:
        raise ConfigError(f"index.max_file_size must be >= 1, got {cfg.index.max_file_size}")
    if cfg.index.batch_size < 1 or cfg.index.workers < 1:
        raise ConfigError("index.batch_size and index.workers must be >= 1")
    if cfg.ann.m < 2 or cfg.ann.ef_construction < 1 or cfg.ann.ef_search < 1:
        raise ConfigError("ann.m must be >= 2 and ann.ef_* must be >= 1")
    if not 0.0 <= cfg.retrieval.threshold <= 1.0:
        raise ConfigError(
            f"retrieval.threshold must be in [0, 1], got {cfg.retrieval.threshold}"
        )
    if cfg.retrieval.top_k < 1:
        raise ConfigError(f"retrieval.top_k must be >= 1, got {cfg.retrieval.top_k}")
    if cfg.refresh.min_interval < 0 or cfg.refresh.max_files_per_pass < 1:
        raise ConfigError("refresh.min_interval must be >= 0 and max_files_per_pass >= 1")
    return cfg


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _cfg_from_dict(data: dict[str, Any]) -> CodeIndexConfig:
    """Build a *CodeIndexConfig* from a merged raw YAML dict."""
    cfg = CodeIndexConfig()

    try:
        if "index" in data:
            i = data["index"] or {}
            cfg.index = IndexCfg(
                enabled=_as_bool(i.get("enabled", cfg.index.enabled)),
                dir=str(i.get("dir", cfg.index.dir)),
                model=str(i.get("model", cfg.index.model)),
                metric=str(i.get("metric", cfg.index.metric)).lower(),
                max_file_size=int(i.get("max_file_size", cfg.index.max_file_size)),
                probe_bytes=int(i.get("probe_bytes", cfg.index.probe_bytes)),
                workers=int(i.get("workers", cfg.index.workers)),
                batch_size=int(i.get("batch_size", cfg.index.batch_size)),
                offline=_as_bool(i.get("offline", cfg.index.offline)),
            )

        if "chunking" in data:
            c = data["chunking"] or {}
            cfg.chunking = ChunkingCfg(
                mode=str(c.get("mode", cfg.chunking.mode)).lower(),
                lines=int(c.get("lines", cfg.chunking.lines)),
                overlap=int(c.get("overlap", cfg.chunking.overlap)),
                paragraph_gap=int(c.get("paragraph_gap", cfg.chunking.paragraph_gap)),
            )

        if "ann" in data:
            a = data["ann"] or {}
            cfg.ann = AnnCfg(
                m=int(a.get("m", cfg.ann.m)),
                ef_construction=int(a.get("ef_construction", cfg.ann.ef_construction)),
                ef_search=int(a.get("ef_search", cfg.ann.ef_search)),
                exact_threshold=int(a.get("exact_threshold", cfg.ann.exact_threshold)),
            )

        if "retrieval" in data:
            r = data["retrieval"] or {}
            cfg.retrieval = RetrievalCfg(
                enabled=_as_bool(r.get("enabled", cfg.retrieval.enabled)),
                threshold=float(r.get("threshold", cfg.retrieval.threshold)),
                top_k=int(r.get("top_k", cfg.retrieval.top_k)),
                context_budget=int(r.get("context_budget", cfg.retrieval.context_budget)),
            )

        if "refresh" in data:
            f = data["refresh"] or {}
            cfg.refresh = RefreshCfg(
                min_interval=float(f.get("min_interval", cfg.refresh.min_interval)),
                max_files_per_pass=int(
                    f.get("max_files_per_pass", cfg.refresh.max_files_per_pass)
                ),
            )

        if "logging" in data:
            lg = data["logging"] or {}
            cfg.logging = LoggingCfg(
                level=str(lg.get("level", cfg.logging.level)).upper(),
                file=lg.get("file") or cfg.logging.file,
            )
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigError(f"Invalid configuration value: {exc}") from exc

    return cfg


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got '{raw}'") from exc


def _apply_env_overrides(cfg: CodeIndexConfig) -> CodeIndexConfig:
    """Apply CODEINDEX_* environment variable overrides (layer 2)."""
    if (raw := os.environ.get("CODEINDEX_INDEXING")) is not None:
        cfg.index.enabled = _as_bool(raw)
    if (raw := os.environ.get("CODEINDEX_RETRIEVAL")) is not None:
        cfg.retrieval.enabled = _as_bool(raw)
    if raw := os.environ.get("CODEINDEX_RETRIEVAL_THRESHOLD"):
        try:
            cfg.retrieval.threshold = min(1.0, max(0.0, float(raw)))
        except ValueError as exc:
            raise ConfigError(
                f"CODEINDEX_RETRIEVAL_THRESHOLD must be a number, got '{raw}'"
            ) from exc
    if model := os.environ.get("CODEINDEX_MODEL"):
        cfg.index.model = model
    if raw := os.environ.get("CODEINDEX_REFRESH_INTERVAL"):
        try:
            cfg.refresh.min_interval = float(raw)
        except ValueError as exc:
            raise ConfigError(
                f"CODEINDEX_REFRESH_INTERVAL must be a number of seconds, got '{raw}'"
            ) from exc
    if (n := _env_int("CODEINDEX_CHUNK_LINES")) is not None:
        cfg.chunking.lines = n
    if (n := _env_int("CODEINDEX_CHUNK_OVERLAP")) is not None:
        cfg.chunking.overlap = n
    if (n := _env_int("CODEINDEX_MAX_FILE_SIZE")) is not None:
        cfg.index.max_file_size = n
    if (n := _env_int("CODEINDEX_CONTEXT_BUDGET")) is not None:
        cfg.retrieval.context_budget = n
    if level := os.environ.get("CODEINDEX_LOG_LEVEL"):
        cfg.logging.level = level.upper()
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> CodeIndexConfig:
    """Load and return a merged *CodeIndexConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *codeindex.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged and validated *CodeIndexConfig*.

    Raises:
        ConfigError: If a layer holds a malformed or out-of-range value.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    for path in (global_path, search_dir / _PROJECT_CONFIG_NAME):
        if not path.exists():
            continue
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Cannot parse '{path}': {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"'{path}' must contain a mapping at the top level")
        _warn_unknown_keys(raw, path)
        merged = _deep_merge(merged, raw)

    cfg = _cfg_from_dict(merged)
    cfg = _apply_env_overrides(cfg)
    return validate(cfg)
