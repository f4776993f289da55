"""codeindex verify — check checksums and id correspondence of the committed index."""

from __future__ import annotations

from typing import Annotated

import typer

from codeindex.build.verify import ProblemKind, Verifier
from codeindex.cli.common import (
    DEFAULT_ROOT,
    RootOption,
    console,
    fail,
    load_project,
    print_report_problems,
)
from codeindex.errors import EXIT_VERIFY_FAILED, NoIndexError


def verify_cmd(
    root: RootOption = DEFAULT_ROOT,
    recall: Annotated[
        bool,
        typer.Option("--recall", help="Also measure ANN recall@1 against the linear scan."),
    ] = False,
    sample: Annotated[
        int,
        typer.Option("--sample", min=1, help="Probe queries used for --recall."),
    ] = 50,
) -> None:
    """Verify the index; never repairs it."""
    root, cfg = load_project(root)
    index_dir = cfg.index_dir(root)
    report = Verifier(index_dir).verify(recall_sample=sample if recall else None)

    if ProblemKind.MISSING_MANIFEST in report.kinds():
        raise fail(NoIndexError(), cfg, index_dir)
    if not report.ok:
        print_report_problems(report)
        raise typer.Exit(EXIT_VERIFY_FAILED)

    manifest = report.manifest
    counts = manifest.counts if manifest else {}
    console.print(
        f"[green]✓[/] Index OK: {counts.get('chunks', 0)} chunks, "
        f"{counts.get('files', 0)} files, checksums match."
    )
    if report.recall is not None:
        console.print(f"  ANN recall@1: {report.recall:.1%} ({sample} samples)")
