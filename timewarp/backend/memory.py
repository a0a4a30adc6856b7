"""In-process commit graph — a deterministic :class:`CommitGraph` backend.

Commits snapshot the working copy as a manifest ``{path: content}``.  Refs,
HEAD, reflogs and an interactive rebase are modelled the way git models
them, closely enough for the engines to behave identically against this
backend and :class:`~timewarp.backend.git.GitRepository`.  Used by the test
suite and for dry runs of a rebase plan.

Rebase replay
-------------
Each todo step replays the original commit's delta (its manifest relative to
its first parent) onto the current rewritten tip:

1. ``compute_delta(parent_manifest, commit_manifest)`` → additions, deletions.
2. ``detect_rebase_conflicts`` — a path conflicts when the tip changed it
   relative to the commit's parent *and* the commit changed it differently.
3. Clean deltas are applied with ``apply_delta``; conflicting ones leave the
   conflicting paths marked in the working copy until
   :meth:`MemoryRepository.resolve_conflict` is called for each of them.

A pick whose parent is already the tip keeps its original commit id, so an
untouched prefix of the plan is a fast-forward.

Reflog messages
---------------
``commit: <msg>``, ``commit (initial): <msg>``, ``commit (amend): <msg>``,
``checkout: moving from <a> to <b>``, ``reset: moving to <id>``,
``rebase (<action>): <msg>``, ``rebase (finish): <ref> onto <id>`` and
``rebase (abort): returning to <ref>``.
"""
from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from timewarp.backend.types import (
    ZERO_ID,
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
from timewarp.errors import BackendIOError, ResolutionError

logger = logging.getLogger(__name__)

_HEADS = "refs/heads/"
_MIN_PREFIX = 4
_EPOCH = 1_700_000_000

DEFAULT_IDENTITY = ("Timewarp Tester", "tester@example.com")


# ---------------------------------------------------------------------------
# Manifest helpers
# ---------------------------------------------------------------------------


def diff_manifests(base: dict[str, str], other: dict[str, str]) -> set[str]:
    """Return every path whose content differs between *base* and *other*."""
    return {p for p in base.keys() | other.keys() if base.get(p) != other.get(p)}


def compute_delta(
    parent_manifest: dict[str, str],
    commit_manifest: dict[str, str],
) -> tuple[dict[str, str], set[str]]:
    """Compute the file-level changes introduced by a single commit.

    Returns:
        Tuple of (additions_and_modifications, deletions).
    """
    additions: dict[str, str] = {}
    deletions: set[str] = set()
    for path in diff_manifests(parent_manifest, commit_manifest):
        if path in commit_manifest:
            additions[path] = commit_manifest[path]
        else:
            deletions.add(path)
    return additions, deletions


def apply_delta(
    onto_manifest: dict[str, str],
    additions: dict[str, str],
    deletions: set[str],
) -> dict[str, str]:
    """Return a copy of *onto_manifest* with the delta applied."""
    result = dict(onto_manifest)
    result.update(additions)
    for path in deletions:
        result.pop(path, None)
    return result


def detect_rebase_conflicts(
    tip_manifest: dict[str, str],
    parent_manifest: dict[str, str],
    additions: dict[str, str],
    deletions: set[str],
) -> set[str]:
    """Identify paths where replaying the delta onto *tip_manifest* conflicts.

    A path conflicts when the tip moved it away from the replayed commit's
    parent and the commit moved it somewhere else.

    Args:
        tip_manifest:    Current rewritten tip.
        parent_manifest: First parent of the commit being replayed.
        additions:       Paths added/modified by the commit being replayed.
        deletions:       Paths deleted by the commit being replayed.
    """
    conflicts: set[str] = set()
    for path in set(additions) | deletions:
        ours = tip_manifest.get(path)
        base = parent_manifest.get(path)
        theirs = additions.get(path)
        if ours != base and ours != theirs:
            conflicts.add(path)
    return conflicts


def _conflict_marker(path: str, ours: str | None, theirs: str | None) -> str:
    return f"<<<<<<< HEAD\n{ours or ''}\n=======\n{theirs or ''}\n>>>>>>> {path}\n"


# ---------------------------------------------------------------------------
# Internal state
# ---------------------------------------------------------------------------


@dataclass
class _Stored:
    commit: Commit
    manifest: dict[str, str]
    seq: int


@dataclass
class _RebaseRun:
    """Mutable bookkeeping for the single in-flight rebase."""

    upstream: str
    orig_head: str
    orig_branch: str | None
    queue: list[TodoStep]
    callback: MessageCallback
    applied: int = 0
    state: RebaseState = RebaseState.RUNNING
    current: TodoStep | None = None
    conflicts: set[str] = field(default_factory=set)


class MemoryRepository:
    """An in-memory repository implementing :class:`CommitGraph`.

    Args:
        branch:   Name of the initial (unborn) branch HEAD points at.
        identity: ``(name, email)`` used for authored and committed changes.
    """

    def __init__(self, branch: str = "main", identity: tuple[str, str] = DEFAULT_IDENTITY) -> None:
        self._commits: dict[str, _Stored] = {}
        self._refs: dict[str, str] = {}
        self._reflogs: dict[str, list[RawReflogEntry]] = {}
        self._head_branch: str | None = _HEADS + branch
        self._head_detached: str | None = None
        self._clock = _EPOCH
        self._seq = 0
        self._identity = identity
        self._rebase: _RebaseRun | None = None
        self.working: dict[str, str] = {}

    # -- test-facing helpers ------------------------------------------------

    def commit(
        self,
        message: str,
        changes: dict[str, str | None] | None = None,
        *,
        author: tuple[str, str] | None = None,
    ) -> str:
        """Apply *changes* to the working copy and commit it on HEAD.

        ``None`` values delete the path.  Returns the new commit id.
        """
        self._apply_changes(changes)
        parent = self.head_id()
        parents = (parent,) if parent else ()
        commit_id = self._store(message, dict(self.working), parents, author=author)
        kind = "commit" if parent else "commit (initial)"
        self._advance_head(commit_id, f"{kind}: {message.splitlines()[0]}")
        return commit_id

    def amend(self, message: str | None = None, changes: dict[str, str | None] | None = None) -> str:
        """Rewrite the HEAD commit with the working copy (plus *changes*)."""
        head = self.head_id()
        if head is None:
            raise BackendIOError("Cannot amend: no commits yet.")
        self._apply_changes(changes)
        old = self._commits[head].commit
        new_message = message if message is not None else old.full_message
        commit_id = self._store(
            new_message, dict(self.working), old.parents, author=(old.author.name, old.author.email)
        )
        self._advance_head(commit_id, f"commit (amend): {new_message.splitlines()[0]}")
        return commit_id

    def create_branch(self, name: str, start: str = "HEAD") -> str:
        target = self.resolve(start)
        if target is None:
            raise ResolutionError(f"Cannot create branch '{name}': '{start}' not found.")
        self._set_ref(_HEADS + name, target, f"branch: Created from {start}")
        return target

    def write(self, path: str, content: str) -> None:
        """Modify the working copy without committing."""
        self.working[path] = content

    def is_dirty(self) -> bool:
        head = self.head_id()
        committed = self._commits[head].manifest if head else {}
        return self.working != committed

    def read_manifest(self, ref: str = "HEAD") -> dict[str, str]:
        commit_id = self.resolve(ref)
        if commit_id is None:
            raise ResolutionError(f"Unknown revision: {ref}")
        return dict(self._commits[commit_id].manifest)

    def head_id(self) -> str | None:
        if self._head_detached is not None:
            return self._head_detached
        return self._refs.get(self._head_branch or "")

    def branch_head(self, name: str) -> str | None:
        return self._refs.get(_HEADS + name)

    def resolve_conflict(self, path: str, content: str | None) -> None:
        """Record the resolution of a conflicted *path* (``None`` deletes it)."""
        run = self._rebase
        if run is None or path not in run.conflicts:
            raise BackendIOError(f"'{path}' is not in conflict.")
        if content is None:
            self.working.pop(path, None)
        else:
            self.working[path] = content
        run.conflicts.discard(path)

    # -- CommitGraph: reads -------------------------------------------------

    def resolve(self, ref: str) -> str | None:
        ref = ref.strip()
        if not ref:
            return None
        base, _, suffix = ref.partition("~")
        steps = 0
        if suffix:
            if not suffix.isdigit():
                return None
            steps = int(suffix)
        commit_id = self._resolve_base(base)
        for _ in range(steps):
            if commit_id is None:
                return None
            parents = self._commits[commit_id].commit.parents
            commit_id = parents[0] if parents else None
        return commit_id

    def _resolve_base(self, ref: str) -> str | None:
        if ref == "HEAD":
            return self.head_id()
        for candidate in (ref, _HEADS + ref, "refs/tags/" + ref):
            if candidate in self._refs:
                return self._refs[candidate]
        if ref in self._commits:
            return ref
        if len(ref) >= _MIN_PREFIX:
            matches = [cid for cid in self._commits if cid.startswith(ref)]
            if len(matches) == 1:
                return matches[0]
        return None

    def read_commit(self, commit_id: str) -> Commit:
        stored = self._commits.get(commit_id)
        if stored is None:
            raise ResolutionError(f"Commit not found: {commit_id}")
        return stored.commit

    def walk(self, start: Sequence[str], uninteresting: Sequence[str] = ()) -> Iterator[Commit]:
        excluded = self._ancestors(uninteresting)
        reachable = self._ancestors(start) - excluded
        ordered = sorted(
            (self._commits[cid] for cid in reachable),
            key=lambda s: (s.commit.committer.timestamp, s.seq),
            reverse=True,
        )
        for stored in ordered:
            yield stored.commit

    def _ancestors(self, roots: Sequence[str]) -> set[str]:
        seen: set[str] = set()
        stack = [r for r in roots if r in self._commits]
        while stack:
            cid = stack.pop()
            if cid in seen:
                continue
            seen.add(cid)
            stack.extend(self._commits[cid].commit.parents)
        return seen

    def current_ref(self) -> str:
        if self._head_detached is not None:
            return self._head_detached
        return (self._head_branch or "").removeprefix(_HEADS)

    def reflog_entries(self, ref_name: str) -> list[RawReflogEntry] | None:
        log = self._reflogs.get(self._full_ref(ref_name))
        if not log:
            return None
        return list(reversed(log))

    # -- CommitGraph: mutations ---------------------------------------------

    def checkout(self, target: str) -> None:
        branch = self._full_ref(target)
        if branch.startswith(_HEADS) and branch in self._refs:
            new_id = self._refs[branch]
            attach = branch
        else:
            resolved = self.resolve(target)
            if resolved is None:
                raise BackendIOError(f"Cannot check out '{target}': no such branch or commit.")
            new_id, attach = resolved, None

        if self.is_dirty():
            raise BackendIOError(
                f"Cannot check out '{target}': working copy has uncommitted changes."
            )

        previous = self.current_ref()
        old_id = self.head_id() or ZERO_ID
        self._head_branch, self._head_detached = (attach, None) if attach else (None, new_id)
        self.working = dict(self._commits[new_id].manifest)
        destination = attach.removeprefix(_HEADS) if attach else new_id
        self._log("HEAD", old_id, new_id, f"checkout: moving from {previous} to {destination}")
        logger.debug("✅ memory checkout %s", destination)

    def reset_hard(self, ref_name: str, target_id: str) -> None:
        target = self.resolve(target_id)
        if target is None:
            raise ResolutionError(f"Commit not found: {target_id}")
        full = self._full_ref(ref_name)
        message = f"reset: moving to {target_id}"
        if full == "HEAD" or full == self._head_branch:
            self._advance_head(target, message)
            self.working = dict(self._commits[target].manifest)
        elif full in self._refs:
            self._set_ref(full, target, message)
        else:
            raise ResolutionError(f"Unknown ref: {ref_name}")

    # -- CommitGraph: rebase ------------------------------------------------

    def rebase_state(self) -> RebaseState:
        return self._rebase.state if self._rebase else RebaseState.NONE

    def rebase_begin(
        self,
        upstream: str,
        steps: Sequence[TodoStep],
        message_callback: MessageCallback,
    ) -> RebaseStepResult:
        if self._rebase is not None:
            raise BackendIOError("A rebase is already in progress.")
        if self.is_dirty():
            return RebaseStepResult(RebaseStatus.UNCOMMITTED_CHANGES)
        onto = self.resolve(upstream)
        head = self.head_id()
        if onto is None or head is None:
            raise BackendIOError(f"Cannot rebase onto '{upstream}': not a commit.")

        self._rebase = _RebaseRun(
            upstream=onto,
            orig_head=head,
            orig_branch=self._head_branch,
            queue=list(steps),
            callback=message_callback,
        )
        self._head_branch, self._head_detached = None, onto
        self.working = dict(self._commits[onto].manifest)
        self._log("HEAD", head, onto, f"rebase (start): checkout {upstream}")
        return self._replay()

    def rebase_continue(self) -> RebaseStepResult:
        run = self._require_rebase()
        if run.state == RebaseState.CONFLICTED:
            if run.conflicts:
                return self._conflict_result(run)
            step = run.current
            run.current = None
            run.state = RebaseState.RUNNING
            if step is not None:
                self._record_step(run, step, dict(self.working))
        run.state = RebaseState.RUNNING
        return self._replay()

    def rebase_skip(self) -> RebaseStepResult:
        run = self._require_rebase()
        if run.state == RebaseState.CONFLICTED:
            run.current = None
            run.conflicts.clear()
            self.working = dict(self._commits[self._tip()].manifest)
        run.state = RebaseState.RUNNING
        return self._replay()

    def rebase_abort(self) -> RebaseStepResult:
        run = self._require_rebase()
        tip = self._tip()
        if run.orig_branch is not None:
            self._head_branch, self._head_detached = run.orig_branch, None
            destination = run.orig_branch
        else:
            self._head_branch, self._head_detached = None, run.orig_head
            destination = run.orig_head
        self.working = dict(self._commits[run.orig_head].manifest)
        self._log("HEAD", tip, run.orig_head, f"rebase (abort): returning to {destination}")
        self._rebase = None
        logger.info("✅ memory rebase aborted, HEAD restored to %s", run.orig_head[:8])
        return RebaseStepResult(RebaseStatus.ABORTED, current_commit=run.orig_head)

    def _require_rebase(self) -> _RebaseRun:
        if self._rebase is None:
            raise BackendIOError("No rebase in progress.")
        return self._rebase

    def _tip(self) -> str:
        head = self.head_id()
        assert head is not None
        return head

    def _replay(self) -> RebaseStepResult:
        run = self._require_rebase()
        while run.queue:
            step = run.queue.pop(0)
            if step.action == TodoAction.COMMENT:
                continue
            stored = self._commits.get(step.commit_id)
            if stored is None:
                run.queue.insert(0, step)
                return RebaseStepResult(RebaseStatus.FAILED, current_commit=step.commit_id)
            if step.action in (TodoAction.SQUASH, TodoAction.FIXUP) and run.applied == 0:
                run.queue.insert(0, step)
                return RebaseStepResult(RebaseStatus.FAILED, current_commit=step.commit_id)

            original = stored.commit
            parent_manifest = (
                self._commits[original.parents[0]].manifest if original.parents else {}
            )
            additions, deletions = compute_delta(parent_manifest, stored.manifest)
            tip_manifest = self._commits[self._tip()].manifest
            conflicts = detect_rebase_conflicts(tip_manifest, parent_manifest, additions, deletions)

            if conflicts:
                merged = apply_delta(tip_manifest, additions, deletions)
                for path in conflicts:
                    merged[path] = _conflict_marker(path, tip_manifest.get(path), additions.get(path))
                self.working = merged
                run.current = step
                run.conflicts = set(conflicts)
                run.state = RebaseState.CONFLICTED
                logger.info("⚠️ memory rebase conflict on %s: %s", original.short_id, sorted(conflicts))
                return self._conflict_result(run)

            self._record_step(run, step, apply_delta(tip_manifest, additions, deletions))
            if step.action == TodoAction.EDIT:
                run.state = RebaseState.STOPPED
                return RebaseStepResult(RebaseStatus.STOPPED, current_commit=self._tip())

        return self._finish(run)

    def _conflict_result(self, run: _RebaseRun) -> RebaseStepResult:
        return RebaseStepResult(
            RebaseStatus.CONFLICTS,
            paths=tuple(sorted(run.conflicts)),
            current_commit=run.current.commit_id if run.current else None,
        )

    def _record_step(self, run: _RebaseRun, step: TodoStep, manifest: dict[str, str]) -> None:
        original = self._commits[step.commit_id].commit
        tip = self._tip()
        tip_commit = self._commits[tip].commit
        author = (original.author.name, original.author.email)

        if step.action in (TodoAction.SQUASH, TodoAction.FIXUP):
            message = tip_commit.full_message
            if step.action == TodoAction.SQUASH:
                message = f"{tip_commit.full_message.rstrip()}\n\n{original.full_message}"
            new_id = self._store(
                message,
                manifest,
                tip_commit.parents,
                author=(tip_commit.author.name, tip_commit.author.email),
                author_time=tip_commit.author.timestamp,
            )
        else:
            message = original.full_message
            if step.action == TodoAction.REWORD:
                message = run.callback(original.id, original.full_message)
            unchanged = (
                original.parents[:1] == (tip,)
                and manifest == self._commits[original.id].manifest
                and message == original.full_message
            )
            new_id = original.id if unchanged else self._store(
                message, manifest, (tip,), author=author, author_time=original.author.timestamp
            )

        run.applied += 1
        self.working = dict(manifest)
        self._head_detached = new_id
        self._log("HEAD", tip, new_id, f"rebase ({step.action.value}): {message.splitlines()[0]}")

    def _finish(self, run: _RebaseRun) -> RebaseStepResult:
        tip = self._tip()
        if run.orig_branch is not None:
            self._set_ref(run.orig_branch, tip, f"rebase (finish): {run.orig_branch} onto {run.upstream}")
            self._head_branch, self._head_detached = run.orig_branch, None
            self._log("HEAD", tip, tip, f"rebase (finish): returning to {run.orig_branch}")
        self._rebase = None
        logger.info("✅ memory rebase finished at %s", tip[:8])
        return RebaseStepResult(RebaseStatus.OK, current_commit=tip)

    # -- bookkeeping --------------------------------------------------------

    def _apply_changes(self, changes: dict[str, str | None] | None) -> None:
        for path, content in (changes or {}).items():
            if content is None:
                self.working.pop(path, None)
            else:
                self.working[path] = content

    def _person(self, identity: tuple[str, str] | None = None, when: int | None = None) -> Person:
        name, email = identity or self._identity
        return Person(name=name, email=email, timestamp=self._clock if when is None else when)

    def _store(
        self,
        message: str,
        manifest: dict[str, str],
        parents: tuple[str, ...],
        *,
        author: tuple[str, str] | None = None,
        author_time: int | None = None,
    ) -> str:
        self._clock += 60
        self._seq += 1
        payload = json.dumps(
            {"m": message, "f": manifest, "p": list(parents), "t": self._clock, "s": self._seq},
            sort_keys=True,
        )
        commit_id = hashlib.sha1(payload.encode()).hexdigest()
        self._commits[commit_id] = _Stored(
            commit=Commit(
                id=commit_id,
                short_message=message.splitlines()[0] if message else "",
                full_message=message,
                author=self._person(author, author_time),
                committer=self._person(),
                parents=parents,
            ),
            manifest=dict(manifest),
            seq=self._seq,
        )
        return commit_id

    def _full_ref(self, name: str) -> str:
        if name == "HEAD" or name.startswith("refs/"):
            return name
        return _HEADS + name

    def _advance_head(self, new_id: str, message: str) -> None:
        old_id = self.head_id() or ZERO_ID
        if self._head_detached is not None or self._head_branch is None:
            self._head_detached = new_id
        else:
            self._refs[self._head_branch] = new_id
            self._log(self._head_branch, old_id, new_id, message)
        self._log("HEAD", old_id, new_id, message)

    def _set_ref(self, ref: str, new_id: str, message: str) -> None:
        old_id = self._refs.get(ref, ZERO_ID)
        self._refs[ref] = new_id
        self._log(ref, old_id, new_id, message)

    def _log(self, ref: str, old_id: str, new_id: str, message: str) -> None:
        self._reflogs.setdefault(ref, []).append(
            RawReflogEntry(old_id=old_id, new_id=new_id, comment=message, who=self._person())
        )
