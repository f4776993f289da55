"""codeindex clean — remove index artifacts.

Keeps the ignore list unless --all is given, so user edits survive a rebuild.

Usage:
  codeindex clean
  codeindex clean --all --yes
"""

from __future__ import annotations

import shutil
from typing import Annotated

import typer

from codeindex.build.lock import lock_status
from codeindex.cli.common import DEFAULT_ROOT, RootOption, console, load_project
from codeindex.cli.errors import err_build_in_progress
from codeindex.errors import EXIT_BUILD_IN_PROGRESS
from codeindex.ingest.pathfilter import IGNORE_LIST_NAME


def clean_cmd(
    root: RootOption = DEFAULT_ROOT,
    all_: Annotated[
        bool,
        typer.Option("--all", help="Also remove the ignore list (the whole index directory)."),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Delete the index so the next build starts from scratch."""
    root, cfg = load_project(root)
    index_dir = cfg.index_dir(root)

    if not index_dir.exists():
        console.print("[dim]Nothing to clean.[/]")
        return

    owner = lock_status(index_dir)
    if owner is not None:
        console.print(err_build_in_progress(owner.pid, owner.started_at))
        raise typer.Exit(EXIT_BUILD_IN_PROGRESS)

    if not yes and not typer.confirm(f"Remove index at '{index_dir}'?", default=True):
        console.print("[dim]Cancelled.[/]")
        raise typer.Exit(0)

    if all_:
        shutil.rmtree(index_dir)
        console.print(f"[green]✓[/] Removed {index_dir}")
        return

    removed = 0
    for path in sorted(index_dir.iterdir()):
        if path.name == IGNORE_LIST_NAME:
            continue
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()
        removed += 1
    console.print(f"[green]✓[/] Removed {removed} index files (ignore list kept).")
