"""Tests for ``timewarp reflog`` — listing and hard-reset time travel."""
from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from timewarp.cli.app import cli
from timewarp.errors import ExitCode

if TYPE_CHECKING:
    from conftest import GitSandbox

runner = CliRunner()


@pytest.fixture
def repo_env(sandbox: GitSandbox, monkeypatch: pytest.MonkeyPatch) -> GitSandbox:
    monkeypatch.setenv("TIMEWARP_REPO_ROOT", str(sandbox.root))
    return sandbox


def test_show_lists_newest_first(repo_env: GitSandbox) -> None:
    ids = repo_env.linear(3)

    result = runner.invoke(cli, ["reflog", "show"])

    assert result.exit_code == ExitCode.SUCCESS, result.output
    assert result.output.splitlines() == [
        f"{ids[2][:8]} HEAD@{{0}}: commit: C3",
        f"{ids[1][:8]} HEAD@{{1}}: commit: C2",
        f"{ids[0][:8]} HEAD@{{2}}: commit (initial): C1",
    ]


def test_show_branch_json_with_limit(repo_env: GitSandbox) -> None:
    ids = repo_env.linear(3)

    result = runner.invoke(cli, ["reflog", "show", "main", "-n", "2", "--json"])

    entries = json.loads(result.output)
    assert [e["index"] for e in entries] == [0, 1]
    assert entries[0]["new_id"] == ids[2]
    assert entries[0]["ref_name"] == "main"
    assert entries[0]["committer"]["name"] == "Ada Tester"


def test_show_unknown_ref(repo_env: GitSandbox) -> None:
    repo_env.linear(1)

    result = runner.invoke(cli, ["reflog", "show", "nope"])

    assert result.exit_code == ExitCode.USER_ERROR
    assert "No reflog found for ref: nope" in result.output


def test_revert_expression(repo_env: GitSandbox) -> None:
    ids = repo_env.linear(3)

    result = runner.invoke(cli, ["reflog", "revert", "HEAD@{2}", "--yes"])

    assert result.exit_code == ExitCode.SUCCESS, result.output
    assert result.output.startswith("✅ ")
    assert repo_env.head() == ids[0]
    assert repo_env.git("rev-parse", "main") == ids[0]


def test_revert_to_commit(repo_env: GitSandbox) -> None:
    ids = repo_env.linear(3)

    result = runner.invoke(cli, ["reflog", "revert", "HEAD", ids[1], "-y"])

    assert result.exit_code == ExitCode.SUCCESS, result.output
    assert repo_env.head() == ids[1]


def test_revert_declined_leaves_history(repo_env: GitSandbox) -> None:
    ids = repo_env.linear(3)

    result = runner.invoke(cli, ["reflog", "revert", "HEAD@{1}"], input="n\n")

    assert result.exit_code != ExitCode.SUCCESS
    assert "hard reset" in result.output
    assert repo_env.head() == ids[2]


def test_revert_confirmed_interactively(repo_env: GitSandbox) -> None:
    ids = repo_env.linear(2)

    result = runner.invoke(cli, ["reflog", "revert", "HEAD@{1}"], input="y\n")

    assert result.exit_code == ExitCode.SUCCESS, result.output
    assert repo_env.head() == ids[0]


@pytest.mark.parametrize("expression", ["HEAD@{9}", "HEAD~1"])
def test_revert_bad_expression(repo_env: GitSandbox, expression: str) -> None:
    ids = repo_env.linear(2)

    result = runner.invoke(cli, ["reflog", "revert", expression, "-y"])

    assert result.exit_code == ExitCode.USER_ERROR
    assert repo_env.head() == ids[1]
