"""codeindex ignore — view and edit the project-local ignore list.

Usage:
  codeindex ignore --list
  codeindex ignore --add "*.min.js" --add "vendor/"
  codeindex ignore --remove dist
  codeindex ignore --reset
"""

from __future__ import annotations

from typing import Annotated

import typer

from codeindex.cli.common import DEFAULT_ROOT, RootOption, console, load_project
from codeindex.cli.errors import err_ignore_no_action
from codeindex.ingest.pathfilter import IGNORE_LIST_NAME, IgnoreRuleSet


def ignore_cmd(
    root: RootOption = DEFAULT_ROOT,
    list_: Annotated[
        bool,
        typer.Option("--list", "-l", help="Print the active patterns."),
    ] = False,
    add: Annotated[
        list[str] | None,
        typer.Option("--add", "-a", help="Pattern to add (repeatable)."),
    ] = None,
    remove: Annotated[
        list[str] | None,
        typer.Option("--remove", "-r", help="Pattern to remove (repeatable)."),
    ] = None,
    reset: Annotated[
        bool,
        typer.Option("--reset", help="Restore the default patterns."),
    ] = False,
) -> None:
    """Edit the ignore list (gitignore syntax). Changes apply on the next build."""
    root, cfg = load_project(root)
    rules = IgnoreRuleSet(cfg.index_dir(root) / IGNORE_LIST_NAME)

    if not (list_ or add or remove or reset):
        console.print(err_ignore_no_action())
        raise typer.Exit(1)

    if reset:
        rules.reset()
        console.print("[green]✓[/] Ignore list reset to defaults.")
    if add:
        rules.add(*add)
        console.print(f"[green]✓[/] Added: {', '.join(add)}")
    if remove:
        before = set(rules.patterns())
        rules.remove(*remove)
        dropped = [p for p in remove if p.strip() in before]
        missing = [p for p in remove if p.strip() not in before]
        if dropped:
            console.print(f"[green]✓[/] Removed: {', '.join(dropped)}")
        if missing:
            console.print(f"[yellow]Not in the list:[/] {', '.join(missing)}")
    if list_:
        for pattern in rules.patterns():
            typer.echo(pattern)
