"""Git CLI backend — :class:`CommitGraph` over a real repository via ``subprocess``.

Every operation shells out to the ``git`` executable (``settings.git_executable``)
with captured text output; a non-zero exit becomes :class:`BackendIOError`
carrying git's stderr.

Walks
-----
``git log -z --format=<fields> <start>... --not <uninteresting>... --`` is
streamed and parsed record by record, so abandoning the iterator early stops
reading git's output.

Interactive rebase
------------------
``git rebase -i`` is driven non-interactively:

- The todo list is rendered up front and installed by a sequence editor that
  copies it over git's own (``GIT_SEQUENCE_EDITOR="cp <todo>"``).
- ``GIT_EDITOR=true`` accepts squash messages as git composes them.
- ``COMMENT`` steps are rendered as commented-out ``# pick`` lines; a todo
  with nothing left to apply becomes ``noop``.
- ``REWORD`` steps become ``pick`` followed by an ``exec git commit --amend``
  that reads the new message from a file under ``<git-dir>/timewarp/``.

Status is read back from ``<git-dir>/rebase-merge`` (or ``rebase-apply``),
unmerged paths and ``stopped-sha``.
"""
from __future__ import annotations

import logging
import os
import pathlib
import re
import shlex
import subprocess
from collections.abc import Iterator, Sequence

from timewarp.backend.types import (
    Commit,
    MessageCallback,
    Person,
    RawReflogEntry,
    RebaseState,
    RebaseStatus,
    RebaseStepResult,
    TodoAction,
    TodoStep,
)
from timewarp.config import settings
from timewarp.errors import BackendIOError, RepositoryNotOpen, ResolutionError

logger = logging.getLogger(__name__)

_FIELD_SEP = "\x1f"
_LOG_FORMAT = _FIELD_SEP.join(["%H", "%P", "%an", "%ae", "%at", "%cn", "%ce", "%ct", "%B"])
_REFLOG_LINE = re.compile(
    r"^(?P<old>[0-9a-f]+) (?P<new>[0-9a-f]+) (?P<name>.*?) <(?P<email>[^>]*)> "
    r"(?P<ts>\d+) (?P<tz>[+-]\d{4})(?:\t(?P<message>.*))?$"
)
_REWORD_PREFIX = "reword-"


def _parse_commit(record: str) -> Commit:
    fields = record.split(_FIELD_SEP)
    if len(fields) != 9:
        raise BackendIOError(f"Unexpected git log record: {record[:80]!r}")
    sha, parents, an, ae, at, cn, ce, ct, body = fields
    full_message = body.rstrip("\n")
    return Commit(
        id=sha,
        short_message=full_message.splitlines()[0] if full_message else "",
        full_message=full_message,
        author=Person(name=an, email=ae, timestamp=int(at)),
        committer=Person(name=cn, email=ce, timestamp=int(ct)),
        parents=tuple(parents.split()),
    )


def _overwritten_paths(stderr: str) -> tuple[str, ...]:
    """Extract the tab-indented path list git prints when it refuses a step."""
    return tuple(line.strip() for line in stderr.splitlines() if line.startswith("\t"))


class GitRepository:
    """A git working tree addressed through the ``git`` executable.

    Args:
        root:           Top-level directory of the working tree.
        git_executable: Override for ``settings.git_executable``.
        timeout:        Per-command timeout in seconds.
    """

    def __init__(
        self,
        root: pathlib.Path,
        *,
        git_executable: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.root = pathlib.Path(root)
        self.git_executable = git_executable or settings.git_executable
        self.timeout = timeout if timeout is not None else settings.git_timeout
        self._git_dir: pathlib.Path | None = None

    @classmethod
    def open(cls, path: pathlib.Path) -> GitRepository:
        """Open the working tree containing *path*.

        Raises:
            RepositoryNotOpen: *path* is not inside a git working tree.
        """
        if not pathlib.Path(path).is_dir():
            raise RepositoryNotOpen(f"Not a directory: {path}")
        probe = cls(path)
        proc = probe._run(["rev-parse", "--show-toplevel"], check=False)
        if proc.returncode != 0:
            raise RepositoryNotOpen(f"Not a git repository: {path}")
        return cls(pathlib.Path(proc.stdout.strip()))

    # -- process plumbing ---------------------------------------------------

    def _run(
        self,
        args: list[str],
        *,
        check: bool = True,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``git <args>`` in the working tree and capture its output."""
        cmd = [self.git_executable, *args]
        logger.debug("git %s", " ".join(args))
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.root,
                capture_output=True,
                text=True,
                env={**os.environ, **env} if env else None,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise BackendIOError(f"git executable not found: {self.git_executable}") from exc
        except subprocess.TimeoutExpired as exc:
            raise BackendIOError(f"git {' '.join(args)} timed out after {self.timeout}s") from exc
        if check and proc.returncode != 0:
            raise BackendIOError(f"git {' '.join(args)} failed: {proc.stderr.strip()}")
        return proc

    @property
    def git_dir(self) -> pathlib.Path:
        if self._git_dir is None:
            out = self._run(["rev-parse", "--absolute-git-dir"]).stdout.strip()
            self._git_dir = pathlib.Path(out)
        return self._git_dir

    @property
    def state_dir(self) -> pathlib.Path:
        """Directory under the git dir for timewarp's own files (created on demand)."""
        path = self.git_dir / settings.state_dir_name
        path.mkdir(parents=True, exist_ok=True)
        return path

    # -- reads --------------------------------------------------------------

    def resolve(self, ref: str) -> str | None:
        if not ref or ref.startswith("-"):
            return None
        proc = self._run(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def read_commit(self, commit_id: str) -> Commit:
        proc = self._run(
            ["log", "-1", "-z", f"--format={_LOG_FORMAT}", commit_id, "--"], check=False
        )
        if proc.returncode != 0 or not proc.stdout:
            raise ResolutionError(f"Commit not found: {commit_id}")
        return _parse_commit(proc.stdout.rstrip("\0"))

    def walk(self, start: Sequence[str], uninteresting: Sequence[str] = ()) -> Iterator[Commit]:
        args = [self.git_executable, "log", "-z", f"--format={_LOG_FORMAT}", *start]
        if uninteresting:
            args += ["--not", *uninteresting]
        args.append("--")
        with subprocess.Popen(
            args, cwd=self.root, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
        ) as proc:
            assert proc.stdout is not None
            buffer = ""
            for chunk in iter(lambda: proc.stdout.read(8192), ""):
                buffer += chunk
                *records, buffer = buffer.split("\0")
                for record in records:
                    if record:
                        yield _parse_commit(record)
            if buffer.strip("\0\n"):
                yield _parse_commit(buffer.rstrip("\0"))
            stderr = proc.stderr.read() if proc.stderr else ""
        if proc.returncode != 0:
            raise BackendIOError(f"git log {' '.join(start)} failed: {stderr.strip()}")

    def current_ref(self) -> str:
        proc = self._run(["symbolic-ref", "--quiet", "--short", "HEAD"], check=False)
        if proc.returncode == 0:
            return proc.stdout.strip()
        return self._run(["rev-parse", "HEAD"]).stdout.strip()

    def reflog_entries(self, ref_name: str) -> list[RawReflogEntry] | None:
        full = self._full_ref_name(ref_name)
        if full is None:
            return None
        rel = self._run(["rev-parse", "--git-path", f"logs/{full}"]).stdout.strip()
        log_path = pathlib.Path(rel)
        if not log_path.is_absolute():
            log_path = self.root / log_path
        if not log_path.is_file():
            return None

        entries: list[RawReflogEntry] = []
        for line in log_path.read_text(encoding="utf-8", errors="replace").splitlines():
            match = _REFLOG_LINE.match(line)
            if match is None:
                logger.warning("⚠️ Skipping unparsable reflog line in %s: %r", full, line[:80])
                continue
            entries.append(
                RawReflogEntry(
                    old_id=match["old"],
                    new_id=match["new"],
                    comment=match["message"] or "",
                    who=Person(name=match["name"], email=match["email"], timestamp=int(match["ts"])),
                )
            )
        if not entries:
            return None
        entries.reverse()
        return entries

    def _full_ref_name(self, ref_name: str) -> str | None:
        if ref_name == "HEAD" or ref_name.startswith("refs/"):
            return ref_name
        proc = self._run(["rev-parse", "--symbolic-full-name", ref_name], check=False)
        full = proc.stdout.strip()
        return full if proc.returncode == 0 and full.startswith("refs/") else None

    def is_dirty(self) -> bool:
        out = self._run(["status", "--porcelain", "--untracked-files=no"]).stdout
        return bool(out.strip())

    # -- mutations ----------------------------------------------------------

    def checkout(self, target: str) -> None:
        self._run(["checkout", "--quiet", target])
        logger.debug("✅ git checkout %s", target)

    def reset_hard(self, ref_name: str, target_id: str) -> None:
        target = self.resolve(target_id)
        if target is None:
            raise ResolutionError(f"Commit not found: {target_id}")
        head_ref = self._run(["symbolic-ref", "--quiet", "HEAD"], check=False).stdout.strip()
        full = self._full_ref_name(ref_name)
        if ref_name == "HEAD" or (full is not None and full == head_ref):
            self._run(["reset", "--hard", "--quiet", target])
        elif full is not None:
            self._run(["update-ref", "-m", f"reset: moving to {target_id}", full, target])
        else:
            raise ResolutionError(f"Unknown ref: {ref_name}")
        logger.info("✅ git reset --hard %s -> %s", ref_name, target[:8])

    # -- rebase -------------------------------------------------------------

    def _rebase_dir(self) -> pathlib.Path | None:
        for name in ("rebase-merge", "rebase-apply"):
            path = self.git_dir / name
            if path.is_dir():
                return path
        return None

    def _conflicted_paths(self) -> tuple[str, ...]:
        out = self._run(["diff", "--name-only", "--diff-filter=U"]).stdout
        return tuple(sorted(line for line in out.splitlines() if line))

    def rebase_state(self) -> RebaseState:
        rebase_dir = self._rebase_dir()
        if rebase_dir is None:
            return RebaseState.NONE
        if self._conflicted_paths():
            return RebaseState.CONFLICTED
        if (rebase_dir / "amend").exists():
            return RebaseState.STOPPED
        return RebaseState.RUNNING

    def _render_todo(self, steps: Sequence[TodoStep], message_callback: MessageCallback) -> str:
        lines: list[str] = []
        for step in steps:
            subject = step.short_message.replace("\n", " ")
            if step.action == TodoAction.COMMENT:
                lines.append(f"# pick {step.commit_id} {subject}")
            elif step.action == TodoAction.REWORD:
                original = self.read_commit(step.commit_id)
                message = message_callback(step.commit_id, original.full_message)
                msg_file = self.state_dir / f"{_REWORD_PREFIX}{step.commit_id}.msg"
                msg_file.write_text(message if message.endswith("\n") else message + "\n")
                amend = [
                    self.git_executable, "commit", "--amend", "--allow-empty",
                    "--no-verify", "--quiet", "-F", str(msg_file),
                ]
                lines.append(f"pick {step.commit_id} {subject}")
                lines.append("exec " + " ".join(shlex.quote(a) for a in amend))
            else:
                lines.append(f"{step.action.value} {step.commit_id} {subject}")
        if not any(line and not line.startswith("#") for line in lines):
            lines.insert(0, "noop")
        return "\n".join(lines) + "\n"

    def _rebase_env(self, todo_file: pathlib.Path | None = None) -> dict[str, str]:
        env = {"GIT_EDITOR": "true"}
        if todo_file is not None:
            env["GIT_SEQUENCE_EDITOR"] = f"cp {shlex.quote(str(todo_file))}"
        return env

    def _cleanup(self) -> None:
        state_dir = self.git_dir / settings.state_dir_name
        if not state_dir.is_dir():
            return
        for path in state_dir.glob(f"{_REWORD_PREFIX}*.msg"):
            path.unlink()
        todo = state_dir / "rebase-todo"
        if todo.exists():
            todo.unlink()

    def _status_after(self, proc: subprocess.CompletedProcess[str]) -> RebaseStepResult:
        rebase_dir = self._rebase_dir()
        if rebase_dir is None:
            if proc.returncode == 0:
                self._cleanup()
                return RebaseStepResult(RebaseStatus.OK, current_commit=self.resolve("HEAD"))
            logger.error("❌ git rebase failed: %s", proc.stderr.strip())
            self._cleanup()
            return RebaseStepResult(RebaseStatus.FAILED, paths=_overwritten_paths(proc.stderr))

        conflicts = self._conflicted_paths()
        stopped = rebase_dir / "stopped-sha"
        stopped_sha = stopped.read_text().strip() if stopped.exists() else None
        if stopped_sha and len(stopped_sha) < 40:
            stopped_sha = self.resolve(stopped_sha) or stopped_sha
        if conflicts:
            logger.info("⚠️ git rebase stopped with conflicts: %s", list(conflicts))
            return RebaseStepResult(RebaseStatus.CONFLICTS, paths=conflicts, current_commit=stopped_sha)
        if (rebase_dir / "amend").exists() and proc.returncode == 0:
            return RebaseStepResult(RebaseStatus.STOPPED, current_commit=self.resolve("HEAD"))
        logger.error("❌ git rebase step failed: %s", proc.stderr.strip())
        return RebaseStepResult(
            RebaseStatus.FAILED, paths=_overwritten_paths(proc.stderr), current_commit=stopped_sha
        )

    def rebase_begin(
        self,
        upstream: str,
        steps: Sequence[TodoStep],
        message_callback: MessageCallback,
    ) -> RebaseStepResult:
        if self._rebase_dir() is not None:
            raise BackendIOError("A rebase is already in progress.")
        if self.is_dirty():
            return RebaseStepResult(RebaseStatus.UNCOMMITTED_CHANGES)
        todo_file = self.state_dir / "rebase-todo"
        todo_file.write_text(self._render_todo(steps, message_callback))
        proc = self._run(
            [
                "-c", "rebase.missingCommitsCheck=ignore",
                "-c", "rebase.autoStash=false",
                "rebase", "-i", "--no-autosquash", upstream,
            ],
            check=False,
            env=self._rebase_env(todo_file),
        )
        return self._status_after(proc)

    def rebase_continue(self) -> RebaseStepResult:
        return self._status_after(
            self._run(["rebase", "--continue"], check=False, env=self._rebase_env())
        )

    def rebase_skip(self) -> RebaseStepResult:
        return self._status_after(
            self._run(["rebase", "--skip"], check=False, env=self._rebase_env())
        )

    def rebase_abort(self) -> RebaseStepResult:
        proc = self._run(["rebase", "--abort"], check=False, env=self._rebase_env())
        if proc.returncode != 0:
            raise BackendIOError(f"git rebase --abort failed: {proc.stderr.strip()}")
        self._cleanup()
        return RebaseStepResult(RebaseStatus.ABORTED, current_commit=self.resolve("HEAD"))
