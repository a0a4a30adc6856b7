"""Bisect engine — binary search over the commit graph for the first bad commit.

Given a known-good and a known-bad commit, the engine walks the commits
reachable from *bad* but not from *good* (the bisect range), checks out the
midpoint and lets the caller report whether it is good or bad, narrowing the
range each time until one commit is left: the first bad commit.

Typical workflow
----------------
1. ``engine.start("v1.2", "HEAD")`` checks out the first candidate.
2. The caller builds, runs tests, listens, ...
3. ``engine.mark_good(session)`` or ``engine.mark_bad(session)``.
4. Repeat 2-3 until the returned step has ``status == COMPLETE``.
5. ``engine.reset(session)`` returns to the branch bisect started from.

:meth:`BisectEngine.run` automates steps 2-4 with a predicate.

Session ownership
-----------------
The engine keeps no state between calls.  Every step returns a new immutable
:class:`BisectSession`; the caller stores it and hands it back on the next
call.  A failed step (for instance a checkout refused because of local
changes) returns no session, so the caller simply retries with the session
it already holds.  Two callers bisecting the same working copy with
different sessions will fight over the checkout; serialising them is the
caller's job.

Algorithm
---------
- Range: ``walk([bad], uninteresting=[good])``, newest first.
- Candidate: ``range[len(range) // 2]`` (lower-middle in newest-first order).
- ``remaining`` is ``(good, bad]`` minus tested commits right after
  ``start``, and ``(good, bad)`` minus tested commits after every mark: the
  bad bound is already known bad, so it only needs testing until the first
  verdict.  When ``remaining`` is empty the bad bound is the answer.  This
  converges in ``ceil(log2(N))`` marks.
- Only a commit in ``remaining`` can be marked.  Marking the bad bound good
  is a contradiction and is refused.
"""
from __future__ import annotations

import dataclasses
import enum
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Callable

from pydantic import BaseModel, ConfigDict

from timewarp.backend.types import Commit, CommitGraph
from timewarp.config import settings
from timewarp.errors import EmptyRangeError, ResolutionError
from timewarp.repository import RepositoryHolder
from timewarp.result import boundary

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Session value
# ---------------------------------------------------------------------------


class BisectStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class BisectVerdict(str, enum.Enum):
    GOOD = "good"
    BAD = "bad"


class BisectSession(BaseModel):
    """Caller-owned, immutable snapshot of a bisect session.

    ``tested`` and ``verdicts`` are parallel: ``verdicts[i]`` is what the
    caller reported for ``tested[i]``.  ``status`` is ``complete`` exactly
    when ``remaining`` is empty.  Round-trips through JSON with
    ``model_dump_json`` / ``model_validate_json``.

    Attributes:
        good_commit:  Current good bound.
        bad_commit:   Current bad bound.
        remaining:    Untested commits between the bounds, newest first.
        tested:       Commits the caller has already marked.
        verdicts:     Verdict for each entry of ``tested``.
        status:       ``in_progress`` or ``complete``.
        original_ref: Branch (or detached commit) HEAD was on at ``start``.
    """

    model_config = ConfigDict(frozen=True)

    good_commit: str
    bad_commit: str
    remaining: tuple[str, ...] = ()
    tested: tuple[str, ...] = ()
    verdicts: tuple[BisectVerdict, ...] = ()
    status: BisectStatus = BisectStatus.IN_PROGRESS
    original_ref: str = ""

    @property
    def is_complete(self) -> bool:
        return self.status == BisectStatus.COMPLETE

    def _marked(self, commit_id: str, verdict: BisectVerdict, remaining: Sequence[str]) -> dict[str, object]:
        rest = tuple(remaining)
        return {
            "remaining": rest,
            "tested": self.tested + (commit_id,),
            "verdicts": self.verdicts + (verdict,),
            "status": BisectStatus.IN_PROGRESS if rest else BisectStatus.COMPLETE,
        }

    def with_good_commit(self, commit_id: str, remaining: Sequence[str]) -> BisectSession:
        """Return a copy with *commit_id* marked good and the range narrowed to *remaining*."""
        return self.model_copy(
            update={"good_commit": commit_id, **self._marked(commit_id, BisectVerdict.GOOD, remaining)}
        )

    def with_bad_commit(self, commit_id: str, remaining: Sequence[str]) -> BisectSession:
        """Return a copy with *commit_id* marked bad and the range narrowed to *remaining*."""
        return self.model_copy(
            update={"bad_commit": commit_id, **self._marked(commit_id, BisectVerdict.BAD, remaining)}
        )


# ---------------------------------------------------------------------------
# Step results
# ---------------------------------------------------------------------------


class BisectStepStatus(str, enum.Enum):
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    RESET = "reset"


@dataclass(frozen=True)
class BisectStep:
    """Outcome of one bisect operation.

    Attributes:
        status:           What happened.
        message:          Human-readable summary for display.
        candidate:        Commit now checked out for testing, if any.
        remaining_count:  Commits still under suspicion.
        session:          Session to pass to the next call (``None`` after reset).
        first_bad_commit: The answer, once ``status`` is ``COMPLETE``.
    """

    status: BisectStepStatus
    message: str
    candidate: Commit | None = None
    remaining_count: int = 0
    session: BisectSession | None = None
    first_bad_commit: Commit | None = None

    @property
    def estimated_steps(self) -> int:
        """Upper bound on the marks still needed."""
        return math.ceil(math.log2(self.remaining_count)) if self.remaining_count > 1 else self.remaining_count


@dataclass(frozen=True)
class BisectRunResult:
    """Outcome of :meth:`BisectEngine.run`.

    ``verdicts`` lists ``(commit_id, verdict)`` in the order the predicate
    was evaluated.  ``final.status`` is ``COMPLETE`` unless the step limit
    was reached first.
    """

    final: BisectStep
    verdicts: tuple[tuple[str, BisectVerdict], ...]


def pick_midpoint(commit_ids: Sequence[str]) -> str | None:
    """Return the lower-middle element of a newest-first range, or ``None`` if empty."""
    if not commit_ids:
        return None
    return commit_ids[len(commit_ids) // 2]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class BisectEngine:
    """Stateless bisect operations over the open repository."""

    def __init__(self, holder: RepositoryHolder) -> None:
        self._holder = holder

    def _resolve(self, backend: CommitGraph, ref: str, role: str) -> str:
        commit_id = backend.resolve(ref)
        if commit_id is None:
            raise ResolutionError(f"Cannot resolve {role} ref '{ref}'.")
        return commit_id

    def _checkout_candidate(self, backend: CommitGraph, remaining: Sequence[str]) -> Commit:
        candidate_id = pick_midpoint(remaining)
        assert candidate_id is not None
        backend.checkout(candidate_id)
        return backend.read_commit(candidate_id)

    @boundary("bisect start")
    def start(self, good_ref: str, bad_ref: str) -> BisectStep:
        """Begin bisecting between *good_ref* and *bad_ref* and check out the first candidate.

        Raises (as a ``Failure``):
            ResolutionError: Either ref does not resolve.
            EmptyRangeError: Nothing is reachable from bad that is not reachable from good.
            BackendIOError:  The candidate could not be checked out.
        """
        backend = self._holder.require()
        good = self._resolve(backend, good_ref, "good")
        bad = self._resolve(backend, bad_ref, "bad")
        original_ref = backend.current_ref()

        commits = [c.id for c in backend.walk([bad], [good])]
        if not commits:
            raise EmptyRangeError(
                f"No commits between good '{good_ref}' and bad '{bad_ref}': "
                "the bad commit is reachable from the good one."
            )

        candidate = self._checkout_candidate(backend, commits)
        session = BisectSession(
            good_commit=good,
            bad_commit=bad,
            remaining=tuple(commits),
            original_ref=original_ref,
        )
        logger.info(
            "✅ bisect start good=%s bad=%s range=%d candidate=%s",
            good[:8], bad[:8], len(commits), candidate.short_id,
        )
        return _candidate_step(BisectStepStatus.STARTED, candidate, session)

    def _mark(self, session: BisectSession, verdict: BisectVerdict) -> BisectStep:
        backend = self._holder.require()
        if session.is_complete:
            first_bad = backend.read_commit(session.bad_commit)
            return _complete(session, first_bad)

        current = self._resolve(backend, "HEAD", "checked-out")
        if current not in session.remaining:
            raise ResolutionError(
                f"Checked-out commit {current[:8]} is not in the bisect range "
                f"{session.good_commit[:8]}..{session.bad_commit[:8]}; "
                "check out the suggested candidate before marking it."
            )
        if current == session.bad_commit and verdict == BisectVerdict.GOOD:
            raise EmptyRangeError(
                f"Marking the bad commit {current[:8]} as good contradicts the session: "
                "no commit in the range is left to be the first bad one."
            )
        tested = set(session.tested) | {current}
        good = current if verdict == BisectVerdict.GOOD else session.good_commit
        bad = current if verdict == BisectVerdict.BAD else session.bad_commit
        remaining = [
            c.id for c in backend.walk([bad], [good]) if c.id not in tested and c.id != bad
        ]

        if verdict == BisectVerdict.GOOD:
            updated = session.with_good_commit(current, remaining)
        else:
            updated = session.with_bad_commit(current, remaining)
        logger.info("✅ bisect %s %s (%d remaining)", verdict.value, current[:8], len(remaining))

        if not remaining:
            first_bad = backend.read_commit(bad)
            logger.info("🎯 bisect identified first bad commit %s", first_bad.short_id)
            return _complete(updated, first_bad)

        candidate = self._checkout_candidate(backend, remaining)
        return _candidate_step(BisectStepStatus.IN_PROGRESS, candidate, updated)

    @boundary("bisect good")
    def mark_good(self, session: BisectSession) -> BisectStep:
        """Mark the checked-out commit good and move to the next candidate."""
        return self._mark(session, BisectVerdict.GOOD)

    @boundary("bisect bad")
    def mark_bad(self, session: BisectSession) -> BisectStep:
        """Mark the checked-out commit bad and move to the next candidate."""
        return self._mark(session, BisectVerdict.BAD)

    @boundary("bisect run")
    def run(
        self,
        session: BisectSession,
        predicate: Callable[[Commit], bool],
        max_steps: int | None = None,
    ) -> BisectRunResult:
        """Drive the session to completion, asking *predicate* about each candidate.

        *predicate* receives the checked-out commit and returns ``True`` for
        good.  Stops after *max_steps* marks (``settings.bisect_max_steps``
        by default), leaving the session in progress.
        """
        backend = self._holder.require()
        limit = max_steps if max_steps is not None else settings.bisect_max_steps
        verdicts: list[tuple[str, BisectVerdict]] = []
        step: BisectStep | None = None

        while not session.is_complete and len(verdicts) < limit:
            current = backend.read_commit(self._resolve(backend, "HEAD", "checked-out"))
            verdict = BisectVerdict.GOOD if predicate(current) else BisectVerdict.BAD
            verdicts.append((current.id, verdict))
            step = self._mark(session, verdict)
            assert step.session is not None
            session = step.session

        if session.is_complete:
            if step is None:
                step = _complete(session, backend.read_commit(session.bad_commit))
            return BisectRunResult(final=step, verdicts=tuple(verdicts))

        logger.warning("⚠️ bisect run stopped after %d steps", len(verdicts))
        candidate = backend.read_commit(self._resolve(backend, "HEAD", "checked-out"))
        step = dataclasses.replace(
            _candidate_step(BisectStepStatus.IN_PROGRESS, candidate, session),
            message=(
                f"⚠️ Step limit reached ({limit}). "
                f"{len(session.remaining)} commit(s) still untested."
            ),
        )
        return BisectRunResult(final=step, verdicts=tuple(verdicts))

    @boundary("bisect reset")
    def reset(self, session: BisectSession | None) -> BisectStep:
        """Check the original branch back out.  A missing session is a no-op."""
        if session is None:
            return BisectStep(
                status=BisectStepStatus.RESET,
                message="No bisect session was in progress.",
            )
        backend = self._holder.require()
        target = session.original_ref or session.bad_commit
        backend.checkout(target)
        logger.info("✅ bisect reset to %s", target)
        return BisectStep(
            status=BisectStepStatus.RESET,
            message=f"Bisect reset. Returned to {target}.",
        )


def _complete(session: BisectSession, first_bad: Commit) -> BisectStep:
    return BisectStep(
        status=BisectStepStatus.COMPLETE,
        message=(
            f"🎯 Bisect complete! First bad commit: {first_bad.short_id} "
            f"{first_bad.short_message}\n"
            "Reset the session to return to the original branch."
        ),
        remaining_count=0,
        session=session,
        first_bad_commit=first_bad,
    )


def _candidate_step(
    status: BisectStepStatus, candidate: Commit, session: BisectSession
) -> BisectStep:
    count = len(session.remaining)
    step = BisectStep(
        status=status,
        message="",
        candidate=candidate,
        remaining_count=count,
        session=session,
    )
    return dataclasses.replace(
        step,
        message=(
            f"Checking {candidate.short_id} {candidate.short_message} "
            f"(~{step.estimated_steps} step(s), {count} in range)"
        ),
    )
