"""codeindex CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from codeindex.cli.build import build_cmd
from codeindex.cli.clean import clean_cmd
from codeindex.cli.ignore import ignore_cmd
from codeindex.cli.query import query_cmd
from codeindex.cli.status import status_cmd
from codeindex.cli.verify import verify_cmd


def _version() -> str:
    try:
        return importlib.metadata.version("codeindex")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"codeindex {_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="codeindex",
    help=(
        "codeindex — local semantic code index.\n\n"
        "  codeindex build   Index the project (incremental when possible).\n"
        "  codeindex query   Search it; low-confidence results are withheld."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """codeindex — local semantic code index."""


app.command("build")(build_cmd)
app.command("query")(query_cmd)
app.command("status")(status_cmd)
app.command("verify")(verify_cmd)
app.command("clean")(clean_cmd)
app.command("ignore")(ignore_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed codeindex version."""
    typer.echo(f"codeindex {_version()}")


if __name__ == "__main__":
    app()
