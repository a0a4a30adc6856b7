"""timewarp rebase — interactive rebase driven by commit numbers.

Workflow::

    timewarp rebase list --base main          # 1 = newest commit on top of main
    timewarp rebase execute main -i "drop 2" -i "reword 1 Better subject"
    timewarp rebase status
    timewarp rebase continue | skip | abort

``plan`` and ``preview`` describe the range without touching the repository.
Numbers given to ``execute`` refer to ``list --base <upstream>`` output.

Exit codes
----------
0  — success, including a stop for editing or conflicts to resolve
1  — user error (invalid instruction, rebase already / not in progress)
2  — not a git repository
3  — backend error (rebase failed, uncommitted changes)
"""
from __future__ import annotations

import dataclasses
import json
from collections.abc import Sequence
from typing import Any

import typer

from timewarp.cli._repo import fail, open_repository
from timewarp.errors import ExitCode, InvalidInstruction
from timewarp.result import Failure, Result
from timewarp.services.rebase import RebaseEngine, RebaseInstruction, RebaseOutcome

app = typer.Typer(help="Plan and run interactive rebases by commit number.")

_JSON_HELP = "Emit structured JSON for agent consumption."


def _engine() -> RebaseEngine:
    _, holder = open_repository()
    return RebaseEngine(holder)


def _emit_rows(rows: Sequence[Any], json_output: bool, line: str) -> None:
    if json_output:
        typer.echo(json.dumps([dataclasses.asdict(r) for r in rows], indent=2))
        return
    for row in rows:
        typer.echo(line.format(**dataclasses.asdict(row)))


def _emit_outcome(outcome: Result[RebaseOutcome]) -> None:
    if isinstance(outcome, Failure):
        raise fail(outcome)
    result = outcome.value
    prefix = "⚠️ " if result.conflicted or result.stopped else "✅ "
    typer.echo(prefix + result.message)
    for path in result.conflicting_paths:
        typer.echo(f"   conflict: {path}")


@app.command("plan")
def rebase_plan(
    upstream: str = typer.Argument(..., help="Upstream commit to rebase onto."),
    branch: str | None = typer.Option(None, "--branch", "-b", help="Branch to plan (default HEAD)."),
    json_output: bool = typer.Option(False, "--json", help=_JSON_HELP),
) -> None:
    """Show the default plan for UPSTREAM..BRANCH, newest first."""
    outcome = _engine().plan(upstream, branch)
    if isinstance(outcome, Failure):
        raise fail(outcome)
    _emit_rows(outcome.value, json_output, "{action.value} {short_id} {short_message}")


@app.command("list")
def rebase_list(
    base: str | None = typer.Option(None, "--base", help="Exclusive lower bound (default: walk to the root)."),
    max_count: int = typer.Option(0, "--max-count", "-n", help="Show at most N commits (0 = default of 10)."),
    full_id: bool = typer.Option(False, "--full-id", help="Show full commit ids."),
    full_message: bool = typer.Option(False, "--full-message", help="Show full commit messages."),
    json_output: bool = typer.Option(False, "--json", help=_JSON_HELP),
) -> None:
    """Number the commits from HEAD for use with ``execute``."""
    outcome = _engine().list_commits(base, max_count, full_id, full_message)
    if isinstance(outcome, Failure):
        raise fail(outcome)
    _emit_rows(outcome.value, json_output, "{numeric_id:>3}  {commit_id}  {short_message}  ({author_name})")


@app.command("preview")
def rebase_preview(
    base: str = typer.Argument(..., help="Commit the rebase would replay onto."),
    max_count: int = typer.Option(0, "--max-count", "-n", help="Show at most N commits (0 = all)."),
    full_id: bool = typer.Option(False, "--full-id", help="Show full commit ids."),
    full_message: bool = typer.Option(False, "--full-message", help="Show full commit messages."),
    json_output: bool = typer.Option(False, "--json", help=_JSON_HELP),
) -> None:
    """Describe the commits a rebase onto BASE would replay."""
    outcome = _engine().preview(base, max_count, full_id, full_message)
    if isinstance(outcome, Failure):
        raise fail(outcome)
    _emit_rows(outcome.value, json_output, "{action} {commit_id} {date}  {message}  <{author_email}>")


@app.command("execute")
def rebase_execute(
    upstream: str = typer.Argument(..., help="Upstream commit to rebase onto."),
    instruction: list[str] = typer.Option(
        [],
        "--instruction",
        "-i",
        help="'<action> <number> [message]', e.g. 'drop 2' or 'reword 1 New subject'. Repeatable.",
    ),
    stop_on_edit: bool = typer.Option(
        False, "--stop-on-edit", help="Pause on 'edit' steps instead of continuing automatically."
    ),
) -> None:
    """Rebase HEAD onto UPSTREAM applying per-commit instructions."""
    try:
        instructions = [RebaseInstruction.parse(text) for text in instruction]
    except InvalidInstruction as exc:
        typer.echo(f"❌ {exc.message}")
        raise typer.Exit(code=ExitCode.USER_ERROR)
    _emit_outcome(_engine().execute(upstream, instructions, stop_on_edit=stop_on_edit))


@app.command("continue")
def rebase_continue() -> None:
    """Resume after resolving conflicts or finishing an edit."""
    _emit_outcome(_engine().continue_())


@app.command("skip")
def rebase_skip() -> None:
    """Skip the commit the rebase stopped on."""
    _emit_outcome(_engine().skip())


@app.command("abort")
def rebase_abort() -> None:
    """Abandon the rebase and restore the original branch."""
    _emit_outcome(_engine().abort())


@app.command("status")
def rebase_status(
    json_output: bool = typer.Option(False, "--json", help=_JSON_HELP),
) -> None:
    """Report whether a rebase is in progress."""
    outcome = _engine().status()
    if isinstance(outcome, Failure):
        raise fail(outcome)
    info = outcome.value
    if json_output:
        typer.echo(json.dumps(dataclasses.asdict(info), indent=2))
        return
    typer.echo(info.message)
