"""Two-variant result type returned by every public engine operation.

Engines never raise to their callers: each public method returns either
:class:`Success` carrying the payload or :class:`Failure` carrying the
error kind (one of :data:`timewarp.errors.ERROR_KINDS`) and a message that
names the offending ref, commit or instruction.  Call sites branch with
``isinstance``::

    outcome = engine.start("v1.0", "HEAD")
    if isinstance(outcome, Failure):
        print(outcome.message)
    else:
        step = outcome.value
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Callable, Generic, ParamSpec, TypeVar, Union

from timewarp.errors import ERROR_KINDS, BackendIOError, ExitCode, HistoryError

logger = logging.getLogger(__name__)

_T = TypeVar("_T")
_P = ParamSpec("_P")


@dataclass(frozen=True)
class Success(Generic[_T]):
    """Operation completed; ``value`` is the payload."""

    value: _T


@dataclass(frozen=True)
class Failure:
    """Operation failed; nothing was left half-applied.

    Attributes:
        kind:    Error taxonomy name, e.g. ``"ResolutionError"``.
        message: Human-readable description naming the offending input.
    """

    kind: str
    message: str

    @classmethod
    def from_error(cls, exc: HistoryError) -> Failure:
        return cls(kind=exc.kind, message=exc.message)

    @property
    def exit_code(self) -> ExitCode:
        """CLI exit code for this failure kind."""
        error_cls = ERROR_KINDS.get(self.kind)
        return error_cls.exit_code if error_cls is not None else ExitCode.INTERNAL_ERROR


Result = Union[Success[_T], Failure]


def unwrap(result: Result[_T]) -> _T:
    """Return the payload of *result* or raise the matching :class:`HistoryError`.

    Intended for scripts and tests that prefer exceptions over branching.
    """
    if isinstance(result, Failure):
        error_cls = ERROR_KINDS.get(result.kind, BackendIOError)
        raise error_cls(result.message)
    return result.value


def boundary(operation: str) -> Callable[[Callable[_P, _T]], Callable[_P, Result[_T]]]:
    """Decorate an engine method so it returns a :class:`Result`.

    :class:`HistoryError` subclasses become a :class:`Failure` of the same
    kind.  Anything else escaping the method is logged with its traceback and
    reported as ``BackendIOError`` so callers still receive a typed value.
    """

    def decorator(func: Callable[_P, _T]) -> Callable[_P, Result[_T]]:
        @functools.wraps(func)
        def wrapper(*args: _P.args, **kwargs: _P.kwargs) -> Result[_T]:
            try:
                return Success(func(*args, **kwargs))
            except HistoryError as exc:
                logger.warning("⚠️ %s failed: %s", operation, exc.message)
                return Failure.from_error(exc)
            except Exception as exc:
                logger.error("❌ %s error: %s", operation, exc, exc_info=True)
                return Failure(kind=BackendIOError.__name__, message=f"{operation} failed: {exc}")

        return wrapper

    return decorator
