"""Process-wide handle to the repository the engines operate on.

Engines are constructed with a :class:`RepositoryHolder` rather than a bare
backend so a caller can open, swap or close the repository between calls.
Every engine operation fetches the backend through :meth:`RepositoryHolder.require`,
which raises :class:`~timewarp.errors.RepositoryNotOpen` when nothing is open.
"""
from __future__ import annotations

import logging
import pathlib

from timewarp.backend.git import GitRepository
from timewarp.backend.types import CommitGraph
from timewarp.errors import RepositoryNotOpen

logger = logging.getLogger(__name__)


class RepositoryHolder:
    """Holds at most one open :class:`CommitGraph` backend."""

    def __init__(self, backend: CommitGraph | None = None) -> None:
        self._backend = backend

    @classmethod
    def open_path(cls, path: pathlib.Path) -> RepositoryHolder:
        """Open the git working tree containing *path*."""
        return cls(GitRepository.open(path))

    def open(self, backend: CommitGraph) -> None:
        if self._backend is not None:
            logger.debug("⚠️ Replacing open repository %r", self._backend)
        self._backend = backend

    def close(self) -> None:
        self._backend = None

    @property
    def is_open(self) -> bool:
        return self._backend is not None

    def require(self) -> CommitGraph:
        if self._backend is None:
            raise RepositoryNotOpen()
        return self._backend
