"""Shared CLI plumbing: project root option, config loading, error mapping."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from codeindex.build.verify import VerifyReport
from codeindex.cli.errors import (
    err_build_failed,
    err_build_in_progress,
    err_config,
    err_config_mismatch,
    err_corrupt_index,
    err_encoder_unavailable,
    err_no_index,
)
from codeindex.config import CodeIndexConfig, ConfigError, load_config
from codeindex.errors import (
    BuildInProgressError,
    CodeIndexError,
    ConfigMismatchError,
    CorruptIndexError,
    EncoderUnavailableError,
    NoIndexError,
)
from codeindex.log import configure_logging

console = Console()

DEFAULT_ROOT = Path(".")

RootOption = Annotated[
    Path,
    typer.Option(
        "--root",
        "-C",
        help="Project root to index (default: current directory).",
        file_okay=False,
    ),
]


def load_project(root: Path) -> tuple[Path, CodeIndexConfig]:
    """Resolve *root*, load its configuration, and set up logging."""
    root = root.resolve()
    try:
        cfg = load_config(root)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from None
    configure_logging(cfg.logging.level, cfg.logging.file)
    return root, cfg


def fail(exc: CodeIndexError, cfg: CodeIndexConfig, index_dir: Path) -> typer.Exit:
    """Print the message for *exc* and return the Exit carrying its code."""
    if isinstance(exc, NoIndexError):
        console.print(err_no_index(str(index_dir)))
    elif isinstance(exc, BuildInProgressError):
        console.print(err_build_in_progress(exc.pid, exc.started_at))
    elif isinstance(exc, ConfigMismatchError):
        console.print(err_config_mismatch(exc.reasons))
    elif isinstance(exc, EncoderUnavailableError):
        console.print(err_encoder_unavailable(cfg.index.model, str(exc)))
    elif isinstance(exc, CorruptIndexError):
        console.print(err_corrupt_index([str(exc)]))
    else:
        console.print(err_build_failed(str(exc)))
    return typer.Exit(exc.exit_code)


def print_report_problems(report: VerifyReport) -> None:
    console.print(err_corrupt_index([str(p) for p in report.problems]))

