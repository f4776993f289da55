"""codeindex status — index overview: readiness, age, model, size, analytics."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from rich.panel import Panel

from codeindex.build.lock import lock_status
from codeindex.cli.common import DEFAULT_ROOT, RootOption, console, fail, load_project
from codeindex.errors import CodeIndexError, NoIndexError
from codeindex.store.analytics import AnalyticsStore
from codeindex.store.manifest import (
    ANALYTICS_NAME,
    MANIFEST_NAME,
    META_NAME,
    VECTORS_NAME,
    Manifest,
    parse_ts,
)


def status_cmd(root: RootOption = DEFAULT_ROOT) -> None:
    """Show whether the index is ready and what it contains."""
    root, cfg = load_project(root)
    index_dir = cfg.index_dir(root)

    try:
        manifest = Manifest.load_optional(index_dir)
    except CodeIndexError as exc:
        raise fail(exc, cfg, index_dir) from None

    owner = lock_status(index_dir)
    build_line = (
        f"Build:         [yellow]in progress[/] (pid {owner.pid}, since {owner.started_at})"
        if owner
        else "Build:         [dim]idle[/]"
    )

    if manifest is None:
        lines = ["Ready:         [yellow]no[/]  (no index yet)", build_line]
        console.print(Panel("\n".join(lines), title="[bold]Code Index[/]", expand=False))
        raise fail(NoIndexError(), cfg, index_dir)

    reasons = manifest.incompatibilities(model=cfg.index.model, dim=None, metric=cfg.index.metric)
    ready = "[green]yes[/]" if not reasons else "[yellow]no[/]  (rebuild needed)"
    counters = AnalyticsStore(index_dir / ANALYTICS_NAME).read()
    attempted = relative_age(counters.last_attempt_ts) if counters.last_attempt_ts else "never"

    lines = [
        f"Ready:         {ready}",
        f"Last indexed:  {relative_age(manifest.last_refresh)}",
        f"Last attempt:  {attempted}",
        f"Model:         {manifest.model} ({manifest.dim}-d, {manifest.metric})",
        f"Chunking:      {manifest.chunk_mode} "
        f"({manifest.chunk.get('lines')} lines, {manifest.chunk.get('overlap')} overlap)",
        f"Files:         {manifest.counts.get('files', 0)}",
        f"Vectors:       {manifest.counts.get('chunks', 0)}",
        f"Size:          {_human_size(_index_size(index_dir))}",
        f"Snapshot:      {(manifest.git_sha or 'none')[:12]}",
        build_line,
        f"Analytics:     {counters.queries} queries, {counters.hits} hits, "
        f"{counters.misses} misses (hit ratio {counters.hit_ratio:.0%})",
    ]
    if manifest.pending:
        lines.append(f"Pending:       {len(manifest.pending)} files deferred")
    for reason in reasons:
        lines.append(f"  [yellow]![/] {reason}")
    console.print(Panel("\n".join(lines), title="[bold]Code Index[/]", expand=False))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def relative_age(timestamp: str | None, now: datetime | None = None) -> str:
    """``just now``, ``5m ago``, ``3h ago``, ``2d ago``, ``4w ago``; ``unknown`` if unparsable."""
    then = parse_ts(timestamp)
    if then is None:
        return "unknown"
    now = now or datetime.now(timezone.utc)
    seconds = max(0, int((now - then).total_seconds()))
    if seconds < 60:
        return "just now"
    for unit, size in (("w", 604_800), ("d", 86_400), ("h", 3_600), ("m", 60)):
        if seconds >= size:
            return f"{seconds // size}{unit} ago"
    return "just now"


def _index_size(index_dir: Path) -> int:
    total = 0
    for name in (MANIFEST_NAME, VECTORS_NAME, META_NAME, ANALYTICS_NAME):
        path = index_dir / name
        if path.exists():
            total += path.stat().st_size
    return total


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"

