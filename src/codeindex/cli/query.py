"""codeindex query — semantic search over the project index.

Usage:
  codeindex query "where is the retry policy configured"
  codeindex query "token refresh" -k 10 --format json --snippets
  codeindex query "token refresh" --diff --line-number-width 5
"""

from __future__ import annotations

from typing import Annotated

import typer

from codeindex.cli.common import DEFAULT_ROOT, RootOption, fail, load_project
from codeindex.errors import CodeIndexError
from codeindex.rag.render import FORMATS, render
from codeindex.rag.retriever import Retriever


def query_cmd(
    text: Annotated[str, typer.Argument(help="What to search for.")],
    root: RootOption = DEFAULT_ROOT,
    k: Annotated[
        int | None,
        typer.Option("-k", "--top-k", min=1, help="Number of hits (default: retrieval.top_k)."),
    ] = None,
    fmt: Annotated[
        str,
        typer.Option("--format", help="Output format: text, json, or xml."),
    ] = "text",
    snippets: Annotated[
        bool,
        typer.Option("--snippets", help="Print the matching lines of each hit."),
    ] = False,
    no_line_numbers: Annotated[
        bool,
        typer.Option("--no-line-numbers", help="Omit line numbers from snippets."),
    ] = False,
    diff: Annotated[
        bool,
        typer.Option("--diff", help="Show snippets as added lines (implies --snippets)."),
    ] = False,
    line_number_width: Annotated[
        int | None,
        typer.Option("--line-number-width", min=1, help="Minimum width of the line number column."),
    ] = None,
    threshold: Annotated[
        float | None,
        typer.Option("--threshold", min=0.0, max=1.0, help="Override the confidence gate."),
    ] = None,
) -> None:
    """Query the index; prints nothing useful below the confidence gate."""
    fmt = fmt.lower()
    if fmt not in FORMATS:
        raise typer.BadParameter(f"expected one of {', '.join(FORMATS)}", param_hint="--format")
    root, cfg = load_project(root)
    if threshold is not None:
        cfg.retrieval.threshold = threshold

    try:
        result = Retriever(root, cfg).query(text, k)
    except CodeIndexError as exc:
        raise fail(exc, cfg, cfg.index_dir(root)) from None

    typer.echo(
        render(
            result,
            root,
            fmt=fmt,
            snippets=snippets,
            line_numbers=not no_line_numbers,
            diff=diff,
            number_width=line_number_width,
        )
    )
