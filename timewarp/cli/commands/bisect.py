"""timewarp bisect — binary search for the commit that introduced a bug.

Subcommands
-----------
``timewarp bisect start <good> <bad>``
    Begin a session and check out the first candidate.  Blocked if a
    session already exists.

``timewarp bisect good`` / ``timewarp bisect bad``
    Mark the checked-out commit and check out the next candidate.  Reports
    the first bad commit once the range is exhausted.

``timewarp bisect run <cmd>``
    Automate the loop.  Runs *cmd* in a shell after each checkout;
    exit 0 → good, any non-zero exit → bad.

``timewarp bisect reset``
    Check the original branch back out and remove the session.

``timewarp bisect log``
    Print the bounds and the verdicts recorded so far.

Session state
-------------
The engine itself is stateless; this command is its caller and keeps the
session between invocations in ``<git-dir>/timewarp/BISECT_SESSION.json``.
A failed step leaves the file untouched.

Exit codes
----------
0  — success (or first bad commit identified)
1  — user error (bad ref, session already active, no session, step limit)
2  — not a git repository
3  — internal / backend error (e.g. checkout refused)
"""
from __future__ import annotations

import json
import logging
import pathlib
import subprocess

import typer
from pydantic import ValidationError

from timewarp.backend.git import GitRepository
from timewarp.backend.types import Commit
from timewarp.cli._repo import fail, open_repository
from timewarp.config import settings
from timewarp.errors import ExitCode
from timewarp.result import Failure
from timewarp.services.bisect import BisectEngine, BisectSession, BisectStep, BisectStepStatus

logger = logging.getLogger(__name__)

app = typer.Typer(help="Binary search for the commit that introduced a bug.")

_SESSION_FILENAME = "BISECT_SESSION.json"


# ---------------------------------------------------------------------------
# Session file helpers
# ---------------------------------------------------------------------------


def _session_path(repo: GitRepository) -> pathlib.Path:
    return repo.state_dir / _SESSION_FILENAME


def read_session(repo: GitRepository) -> BisectSession | None:
    """Return the stored session, or ``None`` if absent or unreadable."""
    path = _session_path(repo)
    if not path.exists():
        return None
    try:
        return BisectSession.model_validate_json(path.read_text())
    except (ValidationError, OSError) as exc:
        logger.warning("⚠️ Failed to read %s: %s", _SESSION_FILENAME, exc)
        return None


def write_session(repo: GitRepository, session: BisectSession) -> None:
    _session_path(repo).write_text(session.model_dump_json(indent=2))
    logger.debug("✅ Wrote %s (good=%s bad=%s)", _SESSION_FILENAME, session.good_commit[:8], session.bad_commit[:8])


def clear_session(repo: GitRepository) -> None:
    path = _session_path(repo)
    if path.exists():
        path.unlink()
        logger.debug("✅ Cleared %s", _SESSION_FILENAME)


def _require_session(repo: GitRepository) -> BisectSession:
    session = read_session(repo)
    if session is None:
        typer.echo("❌ No bisect session in progress. Run 'timewarp bisect start' first.")
        raise typer.Exit(code=ExitCode.USER_ERROR)
    return session


def _report(repo: GitRepository, step: BisectStep) -> None:
    if step.session is not None:
        write_session(repo, step.session)
    typer.echo(step.message)
    if step.status == BisectStepStatus.COMPLETE and step.first_bad_commit is not None:
        logger.info("🎯 bisect identified first bad commit: %s", step.first_bad_commit.short_id)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("start")
def bisect_start(
    good: str = typer.Argument(..., help="Known-good commit (branch, tag or SHA)."),
    bad: str = typer.Argument("HEAD", help="Known-bad commit (branch, tag or SHA)."),
) -> None:
    """Begin a bisect session between GOOD and BAD and check out the first candidate."""
    repo, holder = open_repository()
    if read_session(repo) is not None:
        typer.echo(
            "❌ Bisect already in progress.\n"
            "   Run 'timewarp bisect reset' to end the current session first."
        )
        raise typer.Exit(code=ExitCode.USER_ERROR)

    outcome = BisectEngine(holder).start(good, bad)
    if isinstance(outcome, Failure):
        raise fail(outcome)
    _report(repo, outcome.value)


def _mark(verdict: str) -> None:
    repo, holder = open_repository()
    session = _require_session(repo)
    engine = BisectEngine(holder)
    outcome = engine.mark_good(session) if verdict == "good" else engine.mark_bad(session)
    if isinstance(outcome, Failure):
        raise fail(outcome)
    _report(repo, outcome.value)


@app.command("good")
def bisect_good() -> None:
    """Mark the checked-out commit as good and advance the search."""
    _mark("good")


@app.command("bad")
def bisect_bad() -> None:
    """Mark the checked-out commit as bad and advance the search."""
    _mark("bad")


@app.command("run")
def bisect_run(
    cmd: str = typer.Argument(..., help="Shell command to test each candidate."),
    max_steps: int = typer.Option(
        settings.bisect_max_steps,
        "--max-steps",
        help="Safety limit: stop after this many test iterations.",
    ),
) -> None:
    """Automate the bisect loop by running a command after each checkout.

    The command runs in a shell from the repository root.  Exit code 0 →
    good; any non-zero exit code → bad.

    Example::

        timewarp bisect run "make test"
    """
    repo, holder = open_repository()
    session = _require_session(repo)

    def _test(commit: Commit) -> bool:
        typer.echo(f"⟳  Testing {commit.short_id} {commit.short_message}…")
        proc = subprocess.run(cmd, shell=True, cwd=str(repo.root))
        verdict = "good" if proc.returncode == 0 else "bad"
        typer.echo(f"   exit={proc.returncode} → {verdict}")
        return proc.returncode == 0

    outcome = BisectEngine(holder).run(session, _test, max_steps=max_steps)
    if isinstance(outcome, Failure):
        raise fail(outcome)
    final = outcome.value.final
    _report(repo, final)
    if final.status != BisectStepStatus.COMPLETE:
        raise typer.Exit(code=ExitCode.USER_ERROR)


@app.command("reset")
def bisect_reset() -> None:
    """End the session and check out the branch bisect started from."""
    repo, holder = open_repository()
    session = read_session(repo)
    outcome = BisectEngine(holder).reset(session)
    if isinstance(outcome, Failure):
        raise fail(outcome)
    clear_session(repo)
    typer.echo(outcome.value.message)


@app.command("log")
def bisect_log(
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit structured JSON for agent consumption.",
    ),
) -> None:
    """Show the bisect log — verdicts recorded so far and current bounds."""
    repo, _ = open_repository()
    session = read_session(repo)
    if session is None:
        typer.echo("No bisect session in progress.")
        raise typer.Exit(code=ExitCode.SUCCESS)

    if json_output:
        typer.echo(json.dumps(session.model_dump(mode="json"), indent=2))
        return

    typer.echo(f"Bisect session ({session.status.value}):")
    typer.echo(f"  good:      {session.good_commit[:8]}")
    typer.echo(f"  bad:       {session.bad_commit[:8]}")
    typer.echo(f"  remaining: {len(session.remaining)} commit(s)")
    typer.echo(f"  tested ({len(session.tested)} commit(s)):")
    for cid, verdict in zip(session.tested, session.verdicts):
        typer.echo(f"    {cid[:8]}  {verdict.value}")
