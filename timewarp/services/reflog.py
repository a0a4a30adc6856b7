"""Reflog navigator — read reference logs and travel back along them.

The reflog is backend-owned and append-only: every time a ref moves, the
backend records ``old_id -> new_id`` with the committer and a message.  This
module reads it newest-first, addresses entries relatively (``ref@{n}``) and
drives the one mutating primitive, a hard reset of a ref to an earlier id.

Chain invariant
---------------
For entries read newest-first, ``entries[i].new_id == entries[i - 1].old_id``
for every ``i > 0``.  The oldest entry of a freshly created ref has the
all-zero id as ``old_id``.

Time travel is destructive
--------------------------
:meth:`ReflogNavigator.revert` is ``git reset --hard``: working-copy edits
and uncommitted state are discarded.  The only way back is the reflog itself
(``HEAD@{1}`` right after the revert).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from timewarp.backend.types import Person
from timewarp.errors import ExpressionResolutionError, NoReflogError, ResolutionError
from timewarp.repository import RepositoryHolder
from timewarp.result import boundary

logger = logging.getLogger(__name__)

_EXPRESSION = re.compile(r"^(?P<ref>.+)@\{(?P<n>\d+)\}$")


@dataclass(frozen=True)
class ReflogEntry:
    """One move of a ref, as seen newest-first.

    Attributes:
        index:     Position in newest-first order (0 = most recent).
        old_id:    Commit the ref pointed at before the move.
        new_id:    Commit the ref pointed at after the move.
        message:   Backend description, e.g. ``"commit: Fix parser"``.
        committer: Who moved the ref, and when.
        ref_name:  The ref this log belongs to.
    """

    index: int
    old_id: str
    new_id: str
    message: str
    committer: Person
    ref_name: str


@dataclass(frozen=True)
class RevertResult:
    """Outcome of a hard reset along the reflog."""

    ref_name: str
    commit_id: str
    previous_id: str | None
    message: str


def parse_reflog_expression(expression: str) -> tuple[str, int]:
    """Split ``ref@{n}`` into ``(ref, n)``.

    The ref name is taken verbatim (case-sensitive); ``n`` must be a
    non-negative integer.

    Raises:
        ExpressionResolutionError: *expression* is not of the form ``ref@{n}``.
    """
    match = _EXPRESSION.match(expression.strip())
    if match is None:
        raise ExpressionResolutionError(
            f"Invalid reflog expression '{expression}'. Expected the form ref@{{n}}, e.g. HEAD@{{2}}."
        )
    return match["ref"], int(match["n"])


class ReflogNavigator:
    """Stateless reflog reader plus reset-based time travel."""

    def __init__(self, holder: RepositoryHolder) -> None:
        self._holder = holder

    def _read(self, ref_name: str | None, max_count: int) -> list[ReflogEntry]:
        ref = ref_name or "HEAD"
        limit = max(max_count, 0)
        raw = self._holder.require().reflog_entries(ref)
        if raw is None:
            raise NoReflogError(f"No reflog found for ref: {ref}")
        if limit:
            raw = raw[:limit]
        return [
            ReflogEntry(
                index=i,
                old_id=entry.old_id,
                new_id=entry.new_id,
                message=entry.comment,
                committer=entry.who,
                ref_name=ref,
            )
            for i, entry in enumerate(raw)
        ]

    def _reset(self, ref_name: str, commit_id: str) -> RevertResult:
        backend = self._holder.require()
        target = backend.resolve(commit_id)
        if target is None:
            raise ResolutionError(f"Commit not found: {commit_id}")
        previous = backend.resolve(ref_name)
        backend.reset_hard(ref_name, target)
        logger.info("✅ reflog revert %s: %s -> %s", ref_name, (previous or "none")[:8], target[:8])
        recover = f" Previous position {previous[:8]} is recoverable via {ref_name}@{{1}}." if previous else ""
        return RevertResult(
            ref_name=ref_name,
            commit_id=target,
            previous_id=previous,
            message=(
                f"Reset {ref_name} to {target[:8]}. "
                "Warning: this was a hard reset; uncommitted changes were discarded "
                "and can only be recovered through the reflog." + recover
            ),
        )

    @boundary("reflog show")
    def get_reflog(self, ref_name: str | None = None, max_count: int = 0) -> list[ReflogEntry]:
        """Return the reflog of *ref_name* (default ``HEAD``), newest first.

        Args:
            ref_name:  Ref whose log to read; ``None`` means ``HEAD``.
            max_count: Keep at most this many entries; 0 (or negative) keeps all.
        """
        return self._read(ref_name, max_count)

    @boundary("reflog revert")
    def revert(self, ref_name: str, commit_id: str) -> RevertResult:
        """Hard-reset *ref_name* to *commit_id*.  Destructive; see module docs."""
        return self._reset(ref_name, commit_id)

    def _lookup(self, expression: str) -> tuple[str, ReflogEntry]:
        ref, n = parse_reflog_expression(expression)
        entries = self._read(ref, n + 1)
        if len(entries) <= n:
            raise ExpressionResolutionError(
                f"Cannot resolve '{expression}': reflog for {ref} has only {len(entries)} entries."
            )
        return ref, entries[n]

    @boundary("reflog resolve")
    def resolve_expression(self, expression: str) -> ReflogEntry:
        """Return the reflog entry ``ref@{n}`` designates, without moving anything."""
        return self._lookup(expression)[1]

    @boundary("reflog revert")
    def revert_expression(self, expression: str) -> RevertResult:
        """Hard-reset ``ref`` to the ``new_id`` of entry ``n`` of ``ref@{n}``."""
        ref, entry = self._lookup(expression)
        return self._reset(ref, entry.new_id)
