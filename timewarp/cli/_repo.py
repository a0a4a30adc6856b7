"""Repository detection utilities for the timewarp CLI.

Every subcommand starts by locating the enclosing git working tree: walk up
from the current directory until a ``.git`` entry (directory, or file for
linked worktrees) turns up.  ``TIMEWARP_REPO_ROOT`` overrides discovery,
which keeps tests free of ``os.chdir``.
"""
from __future__ import annotations

import logging
import os
import pathlib

import typer

from timewarp.backend.git import GitRepository
from timewarp.errors import ExitCode, RepositoryNotOpen
from timewarp.repository import RepositoryHolder
from timewarp.result import Failure

logger = logging.getLogger(__name__)


def find_repo_root(start: pathlib.Path | None = None) -> pathlib.Path | None:
    """Walk up from *start* (default ``Path.cwd()``) looking for ``.git``.

    Returns the first directory that contains ``.git``, or ``None``.  Never
    raises.
    """
    if env_root := os.environ.get("TIMEWARP_REPO_ROOT"):
        p = pathlib.Path(env_root).resolve()
        logger.debug("⚠️ TIMEWARP_REPO_ROOT override active: %s", p)
        return p if (p / ".git").exists() else None

    current = (start or pathlib.Path.cwd()).resolve()
    while True:
        if (current / ".git").exists():
            return current
        parent = current.parent
        if parent == current:
            return None
        current = parent


def require_repo(start: pathlib.Path | None = None) -> pathlib.Path:
    """Return the repo root or exit 2 with a clear error message.

    The error goes to stdout so ``typer.testing.CliRunner`` captures it in
    ``result.output``.
    """
    root = find_repo_root(start)
    if root is None:
        typer.echo("Not a git repository (or any of the parent directories).")
        raise typer.Exit(code=ExitCode.REPO_NOT_FOUND)
    return root


def open_repository() -> tuple[GitRepository, RepositoryHolder]:
    """Locate and open the current repository for a command callback."""
    root = require_repo()
    try:
        repo = GitRepository.open(root)
    except RepositoryNotOpen as exc:
        typer.echo(exc.message)
        raise typer.Exit(code=ExitCode.REPO_NOT_FOUND)
    return repo, RepositoryHolder(repo)


def fail(failure: Failure) -> typer.Exit:
    """Echo *failure* and return the ``typer.Exit`` to raise for it."""
    typer.echo(f"❌ {failure.message}")
    return typer.Exit(code=failure.exit_code)
