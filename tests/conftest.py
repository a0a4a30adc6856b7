"""Pytest configuration and fixtures.

Two kinds of repository back the tests:

- :class:`MemoryRepository` — deterministic, in-process; used for engine tests.
- :class:`GitSandbox` — a real git repository in ``tmp_path`` driven through
  the ``git`` executable; tests using it are skipped when git is missing.
"""
from __future__ import annotations

import os
import pathlib
import shutil
import subprocess

import pytest

from timewarp.backend.git import GitRepository
from timewarp.backend.memory import MemoryRepository
from timewarp.repository import RepositoryHolder


@pytest.fixture
def memory_repo() -> MemoryRepository:
    return MemoryRepository()


@pytest.fixture
def memory_holder(memory_repo: MemoryRepository) -> RepositoryHolder:
    return RepositoryHolder(memory_repo)


class GitSandbox:
    """A throwaway git working tree with deterministic commit dates."""

    def __init__(self, root: pathlib.Path) -> None:
        self.root = root
        self._clock = 1_700_000_000
        root.mkdir(parents=True, exist_ok=True)
        self.git("init", "--quiet", "--initial-branch=main")

    def git(self, *args: str, env: dict[str, str] | None = None) -> str:
        proc = subprocess.run(
            ["git", *args],
            cwd=self.root,
            capture_output=True,
            text=True,
            env={**os.environ, **(env or {})},
            check=True,
        )
        return proc.stdout.strip()

    def commit(self, message: str, files: dict[str, str] | None = None) -> str:
        """Write *files*, stage everything and commit; returns the new commit id."""
        for name, content in (files or {}).items():
            path = self.root / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        self.git("add", "--all")
        self._clock += 60
        stamp = f"{self._clock} +0000"
        self.git(
            "commit", "--quiet", "--allow-empty", "-m", message,
            env={"GIT_AUTHOR_DATE": stamp, "GIT_COMMITTER_DATE": stamp},
        )
        return self.git("rev-parse", "HEAD")

    def linear(self, count: int, prefix: str = "C") -> list[str]:
        return [
            self.commit(f"{prefix}{i}", {f"{prefix.lower()}{i}.txt": f"content {i}\n"})
            for i in range(1, count + 1)
        ]

    def head(self) -> str:
        return self.git("rev-parse", "HEAD")

    def subjects(self, rev_range: str = "HEAD") -> list[str]:
        """Commit subjects in *rev_range*, newest first."""
        out = self.git("log", "--format=%s", rev_range)
        return out.splitlines() if out else []


@pytest.fixture
def git_env(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> None:
    """Isolate git from user/system config and pin the identity."""
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Ada Tester")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "ada@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Ada Tester")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "ada@example.com")
    monkeypatch.delenv("GIT_DIR", raising=False)
    monkeypatch.delenv("GIT_WORK_TREE", raising=False)
    monkeypatch.delenv("TIMEWARP_REPO_ROOT", raising=False)


@pytest.fixture
def sandbox(git_env: None, tmp_path: pathlib.Path) -> GitSandbox:
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    return GitSandbox(tmp_path / "repo")


@pytest.fixture
def git_holder(sandbox: GitSandbox) -> RepositoryHolder:
    return RepositoryHolder(GitRepository(sandbox.root))
