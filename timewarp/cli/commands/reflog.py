"""timewarp reflog — inspect reference logs and travel back along them.

``timewarp reflog show [REF]`` lists the log newest first with ``REF@{n}``
labels.  ``timewarp reflog revert HEAD@{2}`` (or ``revert REF COMMIT``)
hard-resets the ref; uncommitted changes are lost.
"""
from __future__ import annotations

import dataclasses
import json

import typer

from timewarp.cli._repo import fail, open_repository
from timewarp.result import Failure
from timewarp.services.reflog import ReflogNavigator

app = typer.Typer(help="Inspect reference logs and travel back along them.")


@app.command("show")
def reflog_show(
    ref: str = typer.Argument("HEAD", help="Ref whose log to show."),
    max_count: int = typer.Option(0, "--max-count", "-n", help="Show at most N entries (0 = all)."),
    json_output: bool = typer.Option(False, "--json", help="Emit structured JSON for agent consumption."),
) -> None:
    """List reflog entries newest first."""
    _, holder = open_repository()
    outcome = ReflogNavigator(holder).get_reflog(ref, max_count)
    if isinstance(outcome, Failure):
        raise fail(outcome)

    if json_output:
        typer.echo(json.dumps([dataclasses.asdict(e) for e in outcome.value], indent=2))
        return
    for entry in outcome.value:
        typer.echo(f"{entry.new_id[:8]} {entry.ref_name}@{{{entry.index}}}: {entry.message}")


@app.command("revert")
def reflog_revert(
    target: str = typer.Argument(..., help="A ref@{n} expression, or a ref name when COMMIT is given."),
    commit: str | None = typer.Argument(None, help="Commit to reset TARGET to."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Hard-reset a ref to an earlier position.  Uncommitted changes are discarded."""
    if not yes:
        typer.confirm(
            "⚠️  This is a hard reset; uncommitted changes will be lost. Continue?",
            abort=True,
        )
    _, holder = open_repository()
    navigator = ReflogNavigator(holder)
    outcome = navigator.revert(target, commit) if commit else navigator.revert_expression(target)
    if isinstance(outcome, Failure):
        raise fail(outcome)
    typer.echo(f"✅ {outcome.value.message}")
