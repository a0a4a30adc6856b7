"""Exit-code contract and error taxonomy for timewarp.

Engines raise these internally and convert them into
:class:`~timewarp.result.Failure` values at their public boundary, so no
caller ever sees one propagate.  Each class carries the CLI exit code the
``timewarp`` console script uses when it reports the failure.
"""
from __future__ import annotations

import enum


class ExitCode(enum.IntEnum):
    """Standardised CLI exit codes.

    0 — success
    1 — user error (bad arguments, invalid input)
    2 — repo-not-found / config invalid
    3 — backend / internal error
    """

    SUCCESS = 0
    USER_ERROR = 1
    REPO_NOT_FOUND = 2
    INTERNAL_ERROR = 3


class HistoryError(Exception):
    """Base exception for every timewarp engine error."""

    exit_code: ExitCode = ExitCode.INTERNAL_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> str:
        """Stable taxonomy name, e.g. ``"ResolutionError"``."""
        return type(self).__name__


class RepositoryNotOpen(HistoryError):
    """No repository handle is open for the engine to operate on."""

    exit_code = ExitCode.REPO_NOT_FOUND

    def __init__(self, message: str = "No repository is open.") -> None:
        super().__init__(message)


class ResolutionError(HistoryError):
    """A reference or commit id does not resolve to a commit."""

    exit_code = ExitCode.USER_ERROR


class EmptyRangeError(HistoryError):
    """A commit range ``good..bad`` enumerates no commits."""

    exit_code = ExitCode.USER_ERROR


class RebaseAlreadyInProgress(HistoryError):
    exit_code = ExitCode.USER_ERROR

    def __init__(
        self,
        message: str = (
            "A rebase is already in progress. "
            "Use rebase continue, rebase abort, or rebase skip."
        ),
    ) -> None:
        super().__init__(message)


class RebaseNotInProgress(HistoryError):
    exit_code = ExitCode.USER_ERROR

    def __init__(self, message: str = "No rebase in progress.") -> None:
        super().__init__(message)


class InvalidInstruction(HistoryError):
    """A rebase instruction names an unknown numeric id or action."""

    exit_code = ExitCode.USER_ERROR


class NoReflogError(HistoryError):
    exit_code = ExitCode.USER_ERROR


class ExpressionResolutionError(HistoryError):
    """A ``ref@{n}`` expression is malformed or points past the reflog."""

    exit_code = ExitCode.USER_ERROR


class BackendIOError(HistoryError):
    """Checkout, reset or rebase-step failure surfaced from the backend."""

    exit_code = ExitCode.INTERNAL_ERROR


ERROR_KINDS: dict[str, type[HistoryError]] = {
    cls.__name__: cls
    for cls in (
        RepositoryNotOpen,
        ResolutionError,
        EmptyRangeError,
        RebaseAlreadyInProgress,
        RebaseNotInProgress,
        InvalidInstruction,
        NoReflogError,
        ExpressionResolutionError,
        BackendIOError,
    )
}
