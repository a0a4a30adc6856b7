"""Tests for the Result boundary and the error taxonomy."""
from __future__ import annotations

import pytest

from timewarp.errors import (
    ERROR_KINDS,
    BackendIOError,
    ExitCode,
    HistoryError,
    InvalidInstruction,
    RebaseAlreadyInProgress,
    RepositoryNotOpen,
    ResolutionError,
)
from timewarp.repository import RepositoryHolder
from timewarp.result import Failure, Success, boundary, unwrap


@boundary("sample")
def _sample(value: int) -> int:
    if value < 0:
        raise ResolutionError(f"Cannot resolve '{value}'.")
    if value == 0:
        raise RuntimeError("disk on fire")
    return value * 2


def test_boundary_wraps_return_value() -> None:
    assert _sample(4) == Success(8)


def test_boundary_converts_history_error() -> None:
    outcome = _sample(-1)

    assert outcome == Failure(kind="ResolutionError", message="Cannot resolve '-1'.")
    assert isinstance(outcome, Failure)
    assert outcome.exit_code == ExitCode.USER_ERROR


def test_boundary_reports_unexpected_errors_as_backend_failures() -> None:
    outcome = _sample(0)

    assert isinstance(outcome, Failure)
    assert outcome.kind == "BackendIOError"
    assert outcome.message == "sample failed: disk on fire"
    assert outcome.exit_code == ExitCode.INTERNAL_ERROR


def test_unwrap_returns_value_or_raises_matching_error() -> None:
    assert unwrap(Success("ok")) == "ok"
    with pytest.raises(InvalidInstruction, match="bad action"):
        unwrap(Failure(kind="InvalidInstruction", message="bad action"))
    with pytest.raises(BackendIOError):
        unwrap(Failure(kind="SomethingElse", message="?"))


def test_unknown_failure_kind_exits_internal() -> None:
    assert Failure(kind="SomethingElse", message="?").exit_code == ExitCode.INTERNAL_ERROR


def test_error_kinds_cover_taxonomy() -> None:
    assert set(ERROR_KINDS) == {
        "RepositoryNotOpen",
        "ResolutionError",
        "EmptyRangeError",
        "RebaseAlreadyInProgress",
        "RebaseNotInProgress",
        "InvalidInstruction",
        "NoReflogError",
        "ExpressionResolutionError",
        "BackendIOError",
    }
    assert all(issubclass(cls, HistoryError) for cls in ERROR_KINDS.values())


def test_default_messages_and_exit_codes() -> None:
    assert RepositoryNotOpen().exit_code == ExitCode.REPO_NOT_FOUND
    assert RebaseAlreadyInProgress().message.startswith("A rebase is already in progress.")
    assert RebaseAlreadyInProgress().kind == "RebaseAlreadyInProgress"


def test_holder_lifecycle(memory_holder: RepositoryHolder) -> None:
    assert memory_holder.is_open
    backend = memory_holder.require()

    memory_holder.close()
    assert not memory_holder.is_open
    with pytest.raises(RepositoryNotOpen):
        memory_holder.require()

    memory_holder.open(backend)
    assert memory_holder.require() is backend
