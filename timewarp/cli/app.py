"""timewarp CLI — Typer application root.

Entry point for the ``timewarp`` console script.  Registers the bisect,
rebase and reflog command groups as Typer sub-applications and configures
logging once per invocation.
"""
from __future__ import annotations

import logging

import typer

from timewarp.cli.commands import bisect, rebase, reflog
from timewarp.config import settings

cli = typer.Typer(
    name="timewarp",
    help="timewarp — bisect, interactive rebase and reflog time travel for git.",
    no_args_is_help=True,
)


@cli.callback()
def _main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to stderr."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.resolved_log_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


cli.add_typer(bisect.app, name="bisect", help="Binary search for the commit that introduced a bug.")
cli.add_typer(rebase.app, name="rebase", help="Plan and run interactive rebases by commit number.")
cli.add_typer(reflog.app, name="reflog", help="Inspect reference logs and travel back along them.")


if __name__ == "__main__":
    cli()
