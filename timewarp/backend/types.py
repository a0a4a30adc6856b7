"""Commit-graph backend contract shared by every timewarp engine.

The engines never talk to git directly.  They consume a :class:`CommitGraph`
— commit resolution, frontier-marked graph walks, checkout, reflog reads,
hard resets and todo-list driven rebase steps — and the concrete backends
(:mod:`timewarp.backend.git`, :mod:`timewarp.backend.memory`) implement it.

Rebase status vocabulary
------------------------
Every rebase transition (``rebase_begin`` / ``rebase_continue`` /
``rebase_skip`` / ``rebase_abort``) answers with a :class:`RebaseStepResult`
whose :class:`RebaseStatus` is one of:

- ``OK`` — all steps applied, the branch now points at the rewritten tip.
- ``STOPPED`` — paused on an ``EDIT`` step, no conflicts.
- ``CONFLICTS`` — paused on a step whose changes conflict; ``paths`` lists them.
- ``FAILED`` — the backend could not apply a step; ``paths`` lists the
  offending files when known.
- ``ABORTED`` — the rebase was abandoned and the original tip restored.
- ``UNCOMMITTED_CHANGES`` — refused to start over a dirty working copy.
"""
from __future__ import annotations

import enum
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Callable, Protocol, runtime_checkable

ZERO_ID = "0" * 40
SHORT_ID_LENGTH = 7


@dataclass(frozen=True)
class Person:
    """Author or committer identity with a POSIX timestamp (seconds)."""

    name: str
    email: str
    timestamp: int


@dataclass(frozen=True)
class Commit:
    """Read-only view of one commit in the graph.

    Attributes:
        id:           Full commit id.
        short_message: First line of the commit message.
        full_message: Complete commit message.
        author:       Who wrote the change.
        committer:    Who recorded it.
        parents:      Ordered parent ids (first parent first).
    """

    id: str
    short_message: str
    full_message: str
    author: Person
    committer: Person
    parents: tuple[str, ...] = ()

    @property
    def short_id(self) -> str:
        return self.id[:SHORT_ID_LENGTH]


@dataclass(frozen=True)
class RawReflogEntry:
    """One backend reflog line: ``old_id -> new_id`` by ``who`` with ``comment``."""

    old_id: str
    new_id: str
    comment: str
    who: Person


class RebaseState(str, enum.Enum):
    """Repository-level rebase state as observed by the backend."""

    NONE = "none"
    RUNNING = "running"
    STOPPED = "stopped"
    CONFLICTED = "conflicted"


class RebaseStatus(str, enum.Enum):
    """Outcome of a single backend rebase transition."""

    OK = "ok"
    STOPPED = "stopped"
    CONFLICTS = "conflicts"
    FAILED = "failed"
    ABORTED = "aborted"
    UNCOMMITTED_CHANGES = "uncommitted_changes"


class TodoAction(str, enum.Enum):
    """Backend todo-step kinds.

    ``COMMENT`` is a step the backend skips during application; dropped
    commits are submitted as ``COMMENT``.
    """

    PICK = "pick"
    REWORD = "reword"
    EDIT = "edit"
    SQUASH = "squash"
    FIXUP = "fixup"
    COMMENT = "comment"


@dataclass(frozen=True)
class TodoStep:
    """One backend rebase instruction, keyed by commit identity."""

    action: TodoAction
    commit_id: str
    short_message: str = ""


@dataclass(frozen=True)
class RebaseStepResult:
    """Status reported by a backend rebase transition."""

    status: RebaseStatus
    paths: tuple[str, ...] = field(default_factory=tuple)
    current_commit: str | None = None


MessageCallback = Callable[[str, str], str]
"""``(commit_id, original_message) -> new_message`` used for reworded commits."""


@runtime_checkable
class CommitGraph(Protocol):
    """Backend contract consumed by the bisect, rebase and reflog engines."""

    def resolve(self, ref: str) -> str | None:
        """Return the full commit id *ref* points at, or ``None``."""
        ...

    def read_commit(self, commit_id: str) -> Commit:
        """Return the commit with *commit_id*; raise ``ResolutionError`` if absent."""
        ...

    def walk(
        self,
        start: Sequence[str],
        uninteresting: Sequence[str] = (),
    ) -> Iterator[Commit]:
        """Yield commits reachable from *start* and not from *uninteresting*.

        Newest-first, lazy and finite; each call starts a fresh walk.
        """
        ...

    def current_ref(self) -> str:
        """Branch name HEAD points at, or the commit id when detached."""
        ...

    def checkout(self, target: str) -> None:
        """Check out a branch or commit; raise ``BackendIOError`` on failure."""
        ...

    def reflog_entries(self, ref_name: str) -> list[RawReflogEntry] | None:
        """Reverse-chronological reflog of *ref_name*, or ``None`` if it has none."""
        ...

    def reset_hard(self, ref_name: str, target_id: str) -> None:
        """Point *ref_name* at *target_id*, resetting the working copy if checked out."""
        ...

    def rebase_state(self) -> RebaseState:
        ...

    def rebase_begin(
        self,
        upstream: str,
        steps: Sequence[TodoStep],
        message_callback: MessageCallback,
    ) -> RebaseStepResult:
        """Start rebasing HEAD onto *upstream* applying *steps* oldest-first."""
        ...

    def rebase_continue(self) -> RebaseStepResult:
        ...

    def rebase_skip(self) -> RebaseStepResult:
        ...

    def rebase_abort(self) -> RebaseStepResult:
        ...
