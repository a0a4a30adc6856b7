"""Rebase planner/executor — interactive rebase without an interactive editor.

Planning
--------
:meth:`RebaseEngine.plan`, :meth:`RebaseEngine.list_commits` and
:meth:`RebaseEngine.preview` all enumerate the same range, the commits
reachable from the tip (``HEAD`` by default) and not from the upstream/base,
newest first.  ``list_commits`` relabels them ``1..n`` in that order so a
caller can refer to commits by small numbers instead of hashes.  Numeric
ids only mean something for the enumeration that produced them.

Execution
---------
:meth:`RebaseEngine.execute` takes instructions like ``{"action": "drop",
"numeric_id": 2}``:

1. Refuse if a rebase is already active (queried from the backend).
2. Validate every instruction (known action, numeric id in range, reword
   message present, no duplicates, no squash/fixup without an earlier
   commit to fold into).  Any violation rejects the whole list.
3. Translate into backend todo steps, oldest first.  Unmentioned commits are
   picked; ``drop`` becomes a ``COMMENT`` step the backend skips.
4. Submit with a message callback that answers reworded commits.
5. While the backend stops for an edit without conflicts, drive ``continue``
   (unless ``stop_on_edit`` is set).  Conflicts always hand control back.

Outcomes
--------
``OK``, ``STOPPED`` (edit pause), ``CONFLICTS`` (with paths) and ``ABORTED``
are successful :class:`RebaseOutcome` values.  ``FAILED`` and
``UNCOMMITTED_CHANGES`` are failures.
"""
from __future__ import annotations

import datetime
import enum
import itertools
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from timewarp.backend.types import (
    Commit,
    CommitGraph,
    RebaseState,
    RebaseStatus,
    RebaseStepResult,
    TodoAction,
    TodoStep,
)
from timewarp.config import settings
from timewarp.errors import (
    BackendIOError,
    InvalidInstruction,
    RebaseAlreadyInProgress,
    RebaseNotInProgress,
    ResolutionError,
)
from timewarp.repository import RepositoryHolder
from timewarp.result import boundary

logger = logging.getLogger(__name__)


class RebaseAction(str, enum.Enum):
    """Caller-facing per-commit rebase actions."""

    PICK = "pick"
    SQUASH = "squash"
    DROP = "drop"
    REWORD = "reword"
    EDIT = "edit"
    FIXUP = "fixup"


VALID_ACTIONS: tuple[str, ...] = tuple(a.value for a in RebaseAction)

_TODO_ACTION: dict[RebaseAction, TodoAction] = {
    RebaseAction.PICK: TodoAction.PICK,
    RebaseAction.SQUASH: TodoAction.SQUASH,
    RebaseAction.DROP: TodoAction.COMMENT,
    RebaseAction.REWORD: TodoAction.REWORD,
    RebaseAction.EDIT: TodoAction.EDIT,
    RebaseAction.FIXUP: TodoAction.FIXUP,
}


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RebasePlanEntry:
    """One commit of a rebase plan.  For ``REWORD``, ``full_message`` is the new message."""

    commit_id: str
    short_id: str
    short_message: str
    full_message: str
    action: RebaseAction = RebaseAction.PICK


@dataclass(frozen=True)
class NumberedCommit:
    """A commit labelled with a call-scoped number (1 = newest)."""

    numeric_id: int
    commit_id: str
    short_message: str
    author_name: str


@dataclass(frozen=True)
class RebaseCommit:
    """Preview row for a commit that a rebase onto the base would replay."""

    commit_id: str
    message: str
    author: str
    author_email: str
    date: str
    action: str = RebaseAction.PICK.value


@dataclass(frozen=True)
class RebaseInstruction:
    """Caller instruction: apply *action* to the commit numbered *numeric_id*."""

    action: str
    numeric_id: int
    new_message: str | None = None

    @classmethod
    def parse(cls, text: str) -> RebaseInstruction:
        """Parse ``"<action> <numeric_id> [new message]"``, e.g. ``"reword 2 Fix typo"``."""
        parts = text.strip().split(None, 2)
        if len(parts) < 2 or not parts[1].isdigit():
            raise InvalidInstruction(
                f"Invalid instruction '{text}'. Expected '<action> <number> [message]'."
            )
        return cls(action=parts[0], numeric_id=int(parts[1]), new_message=parts[2] if len(parts) == 3 else None)


@dataclass(frozen=True)
class RebaseStatusInfo:
    in_progress: bool
    state: RebaseState
    conflicted: bool
    message: str


@dataclass(frozen=True)
class RebaseOutcome:
    """Successful result of a rebase transition.

    Attributes:
        status:            ``OK``, ``STOPPED``, ``CONFLICTS`` or ``ABORTED``.
        message:           Human-readable summary.
        conflicting_paths: Paths needing resolution when ``status`` is ``CONFLICTS``.
        current_commit:    Commit the backend reported (new tip, stopped commit, ...).
    """

    status: RebaseStatus
    message: str
    conflicting_paths: tuple[str, ...] = ()
    current_commit: str | None = None

    @property
    def stopped(self) -> bool:
        return self.status == RebaseStatus.STOPPED

    @property
    def conflicted(self) -> bool:
        return self.status == RebaseStatus.CONFLICTS


def _format_date(timestamp: int) -> str:
    return datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc).isoformat()


def _parse_action(raw: str, numeric_id: int) -> RebaseAction:
    try:
        return RebaseAction(raw.strip().lower())
    except ValueError:
        raise InvalidInstruction(
            f"Invalid action '{raw}' for commit {numeric_id}. "
            f"Valid actions: {', '.join(VALID_ACTIONS)}"
        ) from None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class RebaseEngine:
    """Plans and executes interactive rebases over the open repository."""

    def __init__(self, holder: RepositoryHolder) -> None:
        self._holder = holder

    # -- helpers ------------------------------------------------------------

    def _resolve(self, backend: CommitGraph, ref: str, role: str) -> str:
        commit_id = backend.resolve(ref)
        if commit_id is None:
            raise ResolutionError(f"Cannot resolve {role} '{ref}'.")
        return commit_id

    def _range(self, backend: CommitGraph, upstream: str, branch: str = "HEAD") -> list[Commit]:
        base = self._resolve(backend, upstream, "upstream")
        tip = self._resolve(backend, branch, "branch")
        return list(backend.walk([tip], [base]))

    def _ensure_idle(self, backend: CommitGraph) -> None:
        if backend.rebase_state() != RebaseState.NONE:
            raise RebaseAlreadyInProgress()

    def _ensure_active(self, backend: CommitGraph) -> None:
        if backend.rebase_state() == RebaseState.NONE:
            raise RebaseNotInProgress()

    def _translate(self, result: RebaseStepResult) -> RebaseOutcome:
        status = result.status
        if status == RebaseStatus.OK:
            message = "Rebase completed successfully."
        elif status == RebaseStatus.STOPPED:
            message = "Rebase stopped for editing. Use rebase continue when ready."
        elif status == RebaseStatus.CONFLICTS:
            message = (
                f"Rebase stopped due to conflicts in: {', '.join(result.paths)}. "
                "Resolve and stage them, then continue, skip or abort."
            )
        elif status == RebaseStatus.ABORTED:
            message = "Rebase aborted. The original branch has been restored."
        elif status == RebaseStatus.UNCOMMITTED_CHANGES:
            raise BackendIOError("Cannot start rebase with uncommitted changes.")
        else:
            detail = f" Failing paths: {', '.join(result.paths)}." if result.paths else ""
            raise BackendIOError(
                "Rebase failed." + detail + " Abort the rebase to restore the original branch."
            )
        logger.info("✅ rebase %s (%s)", status.value, (result.current_commit or "")[:8])
        return RebaseOutcome(
            status=status,
            message=message,
            conflicting_paths=tuple(result.paths),
            current_commit=result.current_commit,
        )

    def _submit(
        self,
        backend: CommitGraph,
        upstream: str,
        oldest_first: Sequence[tuple[Commit, RebaseAction]],
        messages: dict[str, str],
        stop_on_edit: bool,
    ) -> RebaseOutcome:
        active = [(c, a) for c, a in oldest_first if a != RebaseAction.DROP]
        if active and active[0][1] in (RebaseAction.SQUASH, RebaseAction.FIXUP):
            commit, action = active[0]
            raise InvalidInstruction(
                f"Cannot {action.value} commit {commit.short_id}: "
                "there is no earlier commit in the rebase to fold it into."
            )

        steps = [
            TodoStep(action=_TODO_ACTION[action], commit_id=commit.id, short_message=commit.short_message)
            for commit, action in oldest_first
        ]

        def answer_message(commit_id: str, original_message: str) -> str:
            return messages.get(commit_id, original_message)

        logger.info("✅ rebase onto %s with %d step(s)", upstream, len(steps))
        result = backend.rebase_begin(upstream, steps, answer_message)

        # Each EDIT can pause at most once, plus one final continue.
        guard = len(steps) + 1
        while not stop_on_edit and result.status == RebaseStatus.STOPPED and guard > 0:
            guard -= 1
            logger.debug("rebase stopped at %s; continuing", (result.current_commit or "")[:8])
            result = backend.rebase_continue()
        return self._translate(result)

    # -- read operations ----------------------------------------------------

    @boundary("rebase status")
    def status(self) -> RebaseStatusInfo:
        """Report whether a rebase is active and whether it is waiting on conflicts."""
        state = self._holder.require().rebase_state()
        if state == RebaseState.NONE:
            message = "No rebase in progress."
        elif state == RebaseState.CONFLICTED:
            message = "Rebase in progress with unresolved conflicts."
        elif state == RebaseState.STOPPED:
            message = "Rebase in progress, stopped for editing."
        else:
            message = "Rebase in progress."
        return RebaseStatusInfo(
            in_progress=state != RebaseState.NONE,
            state=state,
            conflicted=state == RebaseState.CONFLICTED,
            message=message,
        )

    @boundary("rebase plan")
    def plan(self, upstream: str, branch: str | None = None) -> list[RebasePlanEntry]:
        """Return the default (all-``PICK``) plan for ``upstream..branch``, newest first."""
        backend = self._holder.require()
        return [
            RebasePlanEntry(
                commit_id=c.id,
                short_id=c.short_id,
                short_message=c.short_message,
                full_message=c.full_message,
            )
            for c in self._range(backend, upstream, branch or "HEAD")
        ]

    @boundary("rebase list")
    def list_commits(
        self,
        base: str | None = None,
        max_count: int = 0,
        full_id: bool = False,
        full_message: bool = False,
    ) -> list[NumberedCommit]:
        """Number the commits from HEAD (down to *base*, or the root) as ``1..n``.

        Args:
            base:         Exclusive lower bound; ``None`` walks to the root commit.
            max_count:    Keep at most this many; ``<= 0`` means the configured default (10).
            full_id:      Report full commit ids instead of abbreviations.
            full_message: Report full messages instead of first lines.
        """
        backend = self._holder.require()
        limit = max_count if max_count > 0 else settings.default_list_count
        head = self._resolve(backend, "HEAD", "HEAD")
        uninteresting = [self._resolve(backend, base, "base")] if base else []
        walk = itertools.islice(backend.walk([head], uninteresting), limit)
        return [
            NumberedCommit(
                numeric_id=i,
                commit_id=c.id if full_id else c.id[: settings.short_id_length],
                short_message=c.full_message if full_message else c.short_message,
                author_name=c.author.name,
            )
            for i, c in enumerate(walk, start=1)
        ]

    @boundary("rebase preview")
    def preview(
        self,
        base: str,
        max_count: int = 0,
        full_id: bool = False,
        full_message: bool = False,
    ) -> list[RebaseCommit]:
        """Describe the commits a rebase onto *base* would replay, newest first."""
        if not base:
            raise ResolutionError("A base commit is required to preview a rebase.")
        backend = self._holder.require()
        commits = self._range(backend, base)
        if max_count > 0:
            commits = commits[:max_count]
        return [
            RebaseCommit(
                commit_id=c.id if full_id else c.id[: settings.short_id_length],
                message=c.full_message if full_message else c.short_message,
                author=c.author.name,
                author_email=c.author.email,
                date=_format_date(c.author.timestamp),
            )
            for c in commits
        ]

    # -- mutations ----------------------------------------------------------

    @boundary("rebase execute")
    def execute(
        self,
        upstream: str,
        instructions: Sequence[RebaseInstruction],
        stop_on_edit: bool = False,
    ) -> RebaseOutcome:
        """Rebase ``upstream..HEAD`` applying *instructions* keyed by numeric id.

        Numeric ids follow :meth:`list_commits` with ``base=upstream``.
        Validation happens before anything is submitted; a rejected
        instruction list leaves the repository untouched.
        """
        backend = self._holder.require()
        self._ensure_idle(backend)
        commits = self._range(backend, upstream)

        actions: dict[int, RebaseAction] = {}
        messages: dict[str, str] = {}
        for instruction in instructions:
            n = instruction.numeric_id
            action = _parse_action(instruction.action, n)
            if not 1 <= n <= len(commits):
                raise InvalidInstruction(
                    f"Invalid commit ID: {n}. Valid IDs are 1..{len(commits)}."
                )
            if n in actions:
                raise InvalidInstruction(f"Commit ID {n} appears in more than one instruction.")
            if action == RebaseAction.REWORD:
                if not instruction.new_message or not instruction.new_message.strip():
                    raise InvalidInstruction(f"Reword of commit {n} requires a non-empty new message.")
                messages[commits[n - 1].id] = instruction.new_message
            actions[n] = action

        oldest_first = [
            (commit, actions.get(i, RebaseAction.PICK))
            for i, commit in reversed(list(enumerate(commits, start=1)))
        ]
        return self._submit(backend, upstream, oldest_first, messages, stop_on_edit)

    @boundary("rebase apply")
    def apply_plan(
        self,
        upstream: str,
        entries: Sequence[RebasePlanEntry],
        stop_on_edit: bool = False,
    ) -> RebaseOutcome:
        """Execute a newest-first plan from :meth:`plan`, possibly with edited actions.

        Entries omitted from the plan are dropped.  A ``REWORD`` entry's
        ``full_message`` is used as the new message.
        """
        backend = self._holder.require()
        self._ensure_idle(backend)
        by_id = {c.id: c for c in self._range(backend, upstream)}

        oldest_first: list[tuple[Commit, RebaseAction]] = []
        messages: dict[str, str] = {}
        for entry in reversed(entries):
            commit = by_id.get(entry.commit_id)
            if commit is None:
                raise InvalidInstruction(
                    f"Commit {entry.short_id or entry.commit_id[:8]} is not in {upstream}..HEAD."
                )
            if entry.action == RebaseAction.REWORD:
                if not entry.full_message.strip():
                    raise InvalidInstruction(f"Reword of commit {commit.short_id} requires a non-empty message.")
                messages[commit.id] = entry.full_message
            oldest_first.append((commit, RebaseAction(entry.action)))

        listed = {c.id for c, _ in oldest_first}
        if len(listed) != len(oldest_first):
            raise InvalidInstruction("The plan lists a commit more than once.")
        return self._submit(backend, upstream, oldest_first, messages, stop_on_edit)

    @boundary("rebase continue")
    def continue_(self) -> RebaseOutcome:
        backend = self._holder.require()
        self._ensure_active(backend)
        return self._translate(backend.rebase_continue())

    @boundary("rebase skip")
    def skip(self) -> RebaseOutcome:
        backend = self._holder.require()
        self._ensure_active(backend)
        return self._translate(backend.rebase_skip())

    @boundary("rebase abort")
    def abort(self) -> RebaseOutcome:
        """Abandon the active rebase.  Without one this is a no-op success."""
        backend = self._holder.require()
        if backend.rebase_state() == RebaseState.NONE:
            return RebaseOutcome(status=RebaseStatus.OK, message="No rebase in progress. Nothing to abort.")
        return self._translate(backend.rebase_abort())
