"""Tests for :class:`RebaseEngine` over the in-memory backend.

Coverage
--------
- ``plan`` / ``list_commits`` / ``preview`` enumerate upstream..HEAD newest
  first; numeric ids start at 1 for the newest commit.
- ``execute``: drop, reword, squash, fixup, edit (auto-continued and paused),
  case-insensitive actions.
- Validation rejects the whole instruction list and leaves history alone.
- Guards: rebase already in progress, nothing to continue, abort no-op.
- Conflicts: reported with paths, continue/skip/abort after a conflict.
- Uncommitted changes surface as a backend failure.
- ``apply_plan`` executes an edited plan; omitted entries are dropped.
"""
from __future__ import annotations

import dataclasses

import pytest

from timewarp.backend.memory import MemoryRepository
from timewarp.backend.types import RebaseState, RebaseStatus
from timewarp.errors import InvalidInstruction
from timewarp.repository import RepositoryHolder
from timewarp.result import Failure, Success, unwrap
from timewarp.services.rebase import (
    RebaseAction,
    RebaseEngine,
    RebaseInstruction,
)


def _linear(repo: MemoryRepository, count: int) -> list[str]:
    return [repo.commit(f"C{i}", {f"c{i}.txt": f"content {i}\n"}) for i in range(1, count + 1)]


def _subjects(repo: MemoryRepository) -> list[str]:
    head = repo.head_id()
    assert head is not None
    return [c.short_message for c in repo.walk([head])]


def _diverged(repo: MemoryRepository) -> tuple[str, str]:
    """Check out ``other``, which conflicts with ``main`` on shared.txt."""
    repo.commit("base", {"shared.txt": "base\n"})
    repo.create_branch("other")
    ours = repo.commit("ours", {"shared.txt": "main change\n"})
    repo.checkout("other")
    theirs = repo.commit("theirs", {"shared.txt": "other change\n"})
    return ours, theirs


@pytest.fixture
def engine(memory_holder: RepositoryHolder) -> RebaseEngine:
    return RebaseEngine(memory_holder)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def test_plan_is_newest_first_all_pick(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 4)

    entries = unwrap(engine.plan(ids[0]))

    assert [e.commit_id for e in entries] == [ids[3], ids[2], ids[1]]
    assert all(e.action == RebaseAction.PICK for e in entries)
    assert entries[0].short_id == ids[3][:7]
    assert entries[0].short_message == "C4"


def test_plan_unknown_upstream(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    _linear(memory_repo, 2)

    outcome = engine.plan("nope")

    assert isinstance(outcome, Failure)
    assert outcome.kind == "ResolutionError"
    assert "nope" in outcome.message


def test_list_commits_numbers_from_head(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 4)

    rows = unwrap(engine.list_commits(base=ids[0]))

    assert [r.numeric_id for r in rows] == [1, 2, 3]
    assert [r.short_message for r in rows] == ["C4", "C3", "C2"]
    assert rows[0].commit_id == ids[3][:7]
    assert rows[0].author_name == "Timewarp Tester"


def test_list_commits_defaults_to_ten_from_root(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    _linear(memory_repo, 12)

    rows = unwrap(engine.list_commits())

    assert len(rows) == 10
    assert rows[0].short_message == "C12"
    assert rows[-1].short_message == "C3"
    assert len(unwrap(engine.list_commits(max_count=3))) == 3
    assert len(unwrap(engine.list_commits(max_count=50))) == 12


def test_list_commits_full_flags(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    first = memory_repo.commit("Initial", {"a.txt": "a\n"})
    tip = memory_repo.commit("Subject line\n\nBody text.", {"b.txt": "b\n"})

    rows = unwrap(engine.list_commits(base=first, full_id=True, full_message=True))

    assert rows[0].commit_id == tip
    assert rows[0].short_message == "Subject line\n\nBody text."


def test_preview_rows(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 3)

    rows = unwrap(engine.preview(ids[0]))

    assert [r.message for r in rows] == ["C3", "C2"]
    assert all(r.action == "pick" for r in rows)
    assert rows[0].author_email == "tester@example.com"
    assert rows[0].date.startswith("2023-11-14T")
    assert rows[0].date.endswith("+00:00")
    assert len(unwrap(engine.preview(ids[0], max_count=1))) == 1


def test_preview_requires_base(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    _linear(memory_repo, 2)

    outcome = engine.preview("")

    assert isinstance(outcome, Failure)
    assert outcome.kind == "ResolutionError"


def test_instruction_parse() -> None:
    assert RebaseInstruction.parse("reword 2 Fix typo") == RebaseInstruction("reword", 2, "Fix typo")
    assert RebaseInstruction.parse("  drop 3 ") == RebaseInstruction("drop", 3)
    with pytest.raises(InvalidInstruction):
        RebaseInstruction.parse("drop x")
    with pytest.raises(InvalidInstruction):
        RebaseInstruction.parse("pick")


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def test_execute_drop(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 4)

    outcome = unwrap(engine.execute(ids[0], [RebaseInstruction("drop", 2)]))

    assert outcome.status == RebaseStatus.OK
    assert outcome.message == "Rebase completed successfully."
    assert _subjects(memory_repo) == ["C4", "C2", "C1"]
    assert "c3.txt" not in memory_repo.read_manifest("main")
    assert memory_repo.current_ref() == "main"


def test_execute_action_is_case_insensitive(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 3)

    outcome = engine.execute(ids[0], [RebaseInstruction("DROP", 1)])

    assert isinstance(outcome, Success)
    assert _subjects(memory_repo) == ["C2", "C1"]


def test_execute_reword(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 4)

    unwrap(engine.execute(ids[0], [RebaseInstruction("reword", 1, "C4 reworded")]))

    assert _subjects(memory_repo) == ["C4 reworded", "C3", "C2", "C1"]
    # Commits below the reworded one are untouched.
    assert memory_repo.resolve("HEAD~1") == ids[2]


def test_execute_squash_combines_messages(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 4)

    unwrap(engine.execute(ids[0], [RebaseInstruction("squash", 1)]))

    assert _subjects(memory_repo) == ["C3", "C2", "C1"]
    head = memory_repo.read_commit(memory_repo.head_id() or "")
    assert head.full_message == "C3\n\nC4"
    assert memory_repo.read_manifest()["c4.txt"] == "content 4\n"


def test_execute_fixup_keeps_target_message(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 4)

    unwrap(engine.execute(ids[0], [RebaseInstruction("fixup", 1)]))

    head = memory_repo.read_commit(memory_repo.head_id() or "")
    assert head.full_message == "C3"
    assert set(memory_repo.read_manifest()) == {"c1.txt", "c2.txt", "c3.txt", "c4.txt"}


def test_execute_edit_continues_automatically(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 4)

    outcome = unwrap(engine.execute(ids[0], [RebaseInstruction("edit", 2)]))

    assert outcome.status == RebaseStatus.OK
    assert memory_repo.head_id() == ids[3]
    assert memory_repo.rebase_state() == RebaseState.NONE


def test_execute_edit_pauses_when_asked(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 4)

    outcome = unwrap(engine.execute(ids[0], [RebaseInstruction("edit", 2)], stop_on_edit=True))

    assert outcome.stopped
    info = unwrap(engine.status())
    assert info.in_progress and info.state == RebaseState.STOPPED and not info.conflicted

    memory_repo.amend(message="C3 amended")
    finished = unwrap(engine.continue_())

    assert finished.status == RebaseStatus.OK
    assert _subjects(memory_repo) == ["C4", "C3 amended", "C2", "C1"]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("instructions", "fragment"),
    [
        ([RebaseInstruction("drop", 4)], "Invalid commit ID: 4. Valid IDs are 1..3."),
        ([RebaseInstruction("drop", 0)], "Invalid commit ID: 0."),
        ([RebaseInstruction("smash", 1)], "Invalid action 'smash' for commit 1."),
        ([RebaseInstruction("reword", 1)], "non-empty new message"),
        ([RebaseInstruction("reword", 1, "   ")], "non-empty new message"),
        ([RebaseInstruction("drop", 1), RebaseInstruction("edit", 1)], "more than one instruction"),
        ([RebaseInstruction("squash", 3)], "no earlier commit"),
        ([RebaseInstruction("drop", 3), RebaseInstruction("fixup", 2)], "no earlier commit"),
    ],
)
def test_execute_rejects_invalid_instructions(
    memory_repo: MemoryRepository,
    engine: RebaseEngine,
    instructions: list[RebaseInstruction],
    fragment: str,
) -> None:
    ids = _linear(memory_repo, 4)

    outcome = engine.execute(ids[0], instructions)

    assert isinstance(outcome, Failure)
    assert outcome.kind == "InvalidInstruction"
    assert fragment in outcome.message
    assert memory_repo.head_id() == ids[3]
    assert memory_repo.rebase_state() == RebaseState.NONE


def test_invalid_action_lists_valid_ones(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 2)

    outcome = engine.execute(ids[0], [RebaseInstruction("smash", 1)])

    assert isinstance(outcome, Failure)
    assert outcome.message.endswith("Valid actions: pick, squash, drop, reword, edit, fixup")


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def test_execute_while_rebase_active(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 3)
    unwrap(engine.execute(ids[0], [RebaseInstruction("edit", 1)], stop_on_edit=True))

    outcome = engine.execute(ids[0], [])

    assert isinstance(outcome, Failure)
    assert outcome.kind == "RebaseAlreadyInProgress"


def test_continue_and_skip_need_active_rebase(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    _linear(memory_repo, 2)

    for outcome in (engine.continue_(), engine.skip()):
        assert isinstance(outcome, Failure)
        assert outcome.kind == "RebaseNotInProgress"


def test_abort_without_rebase_is_noop(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 2)

    outcome = unwrap(engine.abort())

    assert outcome.status == RebaseStatus.OK
    assert outcome.message == "No rebase in progress. Nothing to abort."
    assert memory_repo.head_id() == ids[1]


def test_status_idle(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    _linear(memory_repo, 1)

    info = unwrap(engine.status())

    assert not info.in_progress
    assert info.state == RebaseState.NONE
    assert info.message == "No rebase in progress."


def test_uncommitted_changes_fail(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 3)
    memory_repo.write("c3.txt", "dirty\n")

    outcome = engine.execute(ids[0], [RebaseInstruction("drop", 1)])

    assert isinstance(outcome, Failure)
    assert outcome.kind == "BackendIOError"
    assert outcome.message == "Cannot start rebase with uncommitted changes."
    assert memory_repo.rebase_state() == RebaseState.NONE


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


def test_conflict_reported_then_resolved(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ours, _ = _diverged(memory_repo)

    outcome = unwrap(engine.execute("main", []))

    assert outcome.conflicted
    assert outcome.conflicting_paths == ("shared.txt",)
    assert "shared.txt" in outcome.message
    assert unwrap(engine.status()).conflicted

    # Continuing with the conflict still unresolved reports it again.
    assert unwrap(engine.continue_()).conflicted

    memory_repo.resolve_conflict("shared.txt", "merged\n")
    finished = unwrap(engine.continue_())

    assert finished.status == RebaseStatus.OK
    assert memory_repo.current_ref() == "other"
    assert memory_repo.read_commit(memory_repo.head_id() or "").parents == (ours,)
    assert memory_repo.read_manifest()["shared.txt"] == "merged\n"


def test_skip_conflicting_commit(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ours, _ = _diverged(memory_repo)
    unwrap(engine.execute("main", []))

    outcome = unwrap(engine.skip())

    assert outcome.status == RebaseStatus.OK
    assert memory_repo.branch_head("other") == ours


def test_abort_after_conflict(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    _, theirs = _diverged(memory_repo)
    unwrap(engine.execute("main", []))

    outcome = unwrap(engine.abort())

    assert outcome.status == RebaseStatus.ABORTED
    assert memory_repo.current_ref() == "other"
    assert memory_repo.head_id() == theirs
    assert not unwrap(engine.status()).in_progress


# ---------------------------------------------------------------------------
# apply_plan
# ---------------------------------------------------------------------------


def test_apply_plan_with_edits(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 4)
    entries = unwrap(engine.plan(ids[0]))
    edited = [
        dataclasses.replace(entries[0], action=RebaseAction.REWORD, full_message="C4 via plan"),
        entries[2],
    ]

    outcome = unwrap(engine.apply_plan(ids[0], edited))

    assert outcome.status == RebaseStatus.OK
    assert _subjects(memory_repo) == ["C4 via plan", "C2", "C1"]


def test_apply_plan_rejects_foreign_commit(memory_repo: MemoryRepository, engine: RebaseEngine) -> None:
    ids = _linear(memory_repo, 3)
    entries = unwrap(engine.plan(ids[1]))
    foreign = dataclasses.replace(entries[0], commit_id=ids[0], short_id=ids[0][:7])

    outcome = engine.apply_plan(ids[1], [foreign])

    assert isinstance(outcome, Failure)
    assert outcome.kind == "InvalidInstruction"
    assert memory_repo.head_id() == ids[2]
