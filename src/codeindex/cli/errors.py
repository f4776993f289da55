"""codeindex rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from codeindex.cli.errors import err_no_index
    console.print(err_no_index(index_dir))
    raise typer.Exit(EXIT_NO_INDEX)
"""

from __future__ import annotations


def err_no_index(index_dir: str) -> str:
    """No committed index for the project."""
    return (
        f"[red]Error:[/] No index found at '{index_dir}'.\n"
        "  Run:  codeindex build"
    )


def err_build_in_progress(pid: int | None, started_at: str | None) -> str:
    """Another process holds the build lock."""
    owner = f" (pid {pid}, started {started_at})" if pid else ""
    return (
        f"[red]Error:[/] A build is already in progress{owner}.\n"
        "  Wait for it to finish, then run:  codeindex status"
    )


def err_encoder_unavailable(model: str, detail: str) -> str:
    """Embedding model could not be loaded; the previous index is untouched."""
    return (
        f"[red]Error:[/] Cannot load embedding model '{model}'.\n"
        f"  {detail}\n"
        "  The previous index (if any) is unchanged and still served.\n"
        "  Allow the one-time download:  set 'index: {offline: false}' in codeindex.yaml,\n"
        "  then run:  codeindex build"
    )


def err_config_mismatch(reasons: list[str]) -> str:
    """Persisted index was built with other settings."""
    listed = "\n".join(f"    - {r}" for r in reasons)
    return (
        "[red]Error:[/] The index was built with different settings:\n"
        f"{listed}\n"
        "  Rebuild it:  codeindex build"
    )


def err_build_failed(detail: str) -> str:
    """A build aborted; the previous generation is intact."""
    return (
        f"[red]Error:[/] Build failed: {detail}\n"
        "  The previous index (if any) is unchanged.\n"
        "  Check disk space and permissions, then run:  codeindex build"
    )


def err_corrupt_index(problems: list[str]) -> str:
    """Verification found corruption."""
    listed = "\n".join(f"    - {p}" for p in problems)
    return (
        "[red]Error:[/] Index verification failed:\n"
        f"{listed}\n"
        "  Run:  codeindex clean && codeindex build"
    )


def err_config(detail: str) -> str:
    """codeindex.yaml or an environment override holds an invalid value."""
    return (
        f"[red]Error:[/] Invalid configuration: {detail}\n"
        "  Fix codeindex.yaml (or the CODEINDEX_* variable) and retry."
    )


def err_ignore_no_action() -> str:
    return (
        "[red]Error:[/] Nothing to do.\n"
        "  Use one of:  codeindex ignore --list | --add P | --remove P | --reset"
    )
