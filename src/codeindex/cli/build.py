"""codeindex build — create or refresh the project index.

Usage:
  codeindex build
  codeindex build --force --model bge-large
  codeindex build --chunk lines --lines 80 --overlap 16
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from codeindex.build.coordinator import BuildCoordinator, BuildState
from codeindex.cli.common import DEFAULT_ROOT, RootOption, console, fail, load_project
from codeindex.cli.errors import err_config
from codeindex.config import ConfigError, validate
from codeindex.errors import CodeIndexError

_STATE_LABELS = {
    BuildState.LOCKING: "Acquiring build lock…",
    BuildState.SCANNING: "Scanning files…",
    BuildState.CHUNKING: "Chunking…",
    BuildState.EMBEDDING: "Embedding…",
    BuildState.WRITING: "Writing index…",
    BuildState.VERIFYING: "Verifying…",
}


def build_cmd(
    root: RootOption = DEFAULT_ROOT,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Rebuild from scratch even if the index is reusable."),
    ] = False,
    model: Annotated[
        str | None,
        typer.Option("--model", "-m", help="Embedding model (bge-small, bge-large, or a fastembed name)."),
    ] = None,
    chunk: Annotated[
        str | None,
        typer.Option("--chunk", help="Chunking mode: auto (tiered) or lines (fixed windows)."),
    ] = None,
    lines: Annotated[
        int | None,
        typer.Option("--lines", help="Target chunk length in lines."),
    ] = None,
    overlap: Annotated[
        int | None,
        typer.Option("--overlap", help="Lines of overlap between chunks."),
    ] = None,
) -> None:
    """Build the index (incremental when possible, full when needed)."""
    root, cfg = load_project(root)
    if model:
        cfg.index.model = model
    if chunk:
        cfg.chunking.mode = chunk.lower()
    if lines is not None:
        cfg.chunking.lines = lines
    if overlap is not None:
        cfg.chunking.overlap = overlap
    try:
        validate(cfg)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from None

    index_dir = cfg.index_dir(root)
    with console.status("Starting build…") as status:

        def on_state(state: BuildState) -> None:
            label = _STATE_LABELS.get(state)
            if label:
                status.update(label)

        try:
            report = BuildCoordinator(root, cfg, on_state=on_state).build(force=force)
        except CodeIndexError as exc:
            raise fail(exc, cfg, index_dir) from None

    if report.mode == "noop":
        console.print("[green]✓[/] Index is up to date.")
        return

    manifest = report.manifest
    totals = (
        f"{manifest.counts['files']} files, {manifest.counts['chunks']} chunks"
        if manifest is not None
        else ""
    )
    console.print(
        f"[green]✓[/] {report.mode.capitalize()} build: "
        f"{report.files_scanned} files scanned, "
        f"+{report.chunks_added}/-{report.chunks_removed} chunks "
        f"in {report.duration:.1f}s"
    )
    if totals:
        console.print(f"  Index: {totals}  [dim]({_rel(index_dir, root)})[/]")
    if report.deferred:
        console.print(f"  [yellow]{report.deferred} files deferred to the next pass.[/]")


def _rel(path: Path, root: Path) -> str:
    try:
        return str(path.relative_to(root))
    except ValueError:
        return str(path)
