"""Commit-graph backends: the :class:`CommitGraph` contract and its implementations."""
from __future__ import annotations

from timewarp.backend.git import GitRepository
from timewarp.backend.memory import MemoryRepository
from timewarp.backend.types import (
    ZERO_ID,
    Commit,
    CommitGraph,
    MessageCallback,
    Person,
    RawReflogEntry,
    RebaseState,
    RebaseStatus,
    RebaseStepResult,
    TodoAction,
    TodoStep,
)

__all__ = [
    "ZERO_ID",
    "Commit",
    "CommitGraph",
    "GitRepository",
    "MemoryRepository",
    "MessageCallback",
    "Person",
    "RawReflogEntry",
    "RebaseState",
    "RebaseStatus",
    "RebaseStepResult",
    "TodoAction",
    "TodoStep",
]
