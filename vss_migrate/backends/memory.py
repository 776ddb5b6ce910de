"""
In-memory backend.

Keeps snapshot history in process. Used for dry runs, where the whole
pipeline runs but nothing is written to a target repository.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from vss_migrate.backends.base import (
    DeleteDir,
    DeleteFile,
    Mutation,
    MovePath,
    VcsBackend,
    WriteFile,
)
from vss_migrate.errors import BackendCommitError
from vss_migrate.models import AuthorIdentity


logger = logging.getLogger(__name__)


class MemoryCommit(BaseModel):
    """One recorded commit and the tree it produced."""

    commit_id: str
    author: AuthorIdentity
    timestamp: datetime
    message: str
    encoding: str = "utf-8"
    tree: Dict[str, bytes] = Field(default_factory=dict)


class MemoryTag(BaseModel):
    name: str
    commit_id: str
    message: Optional[str] = None


class MemoryBackend(VcsBackend):
    """Snapshot history held in memory."""

    def __init__(self):
        self.commits: List[MemoryCommit] = []
        self.tags: Dict[str, MemoryTag] = {}
        self.tree: Dict[str, bytes] = {}

    def init(self) -> None:
        # Drop anything applied after the last commit
        self.tree = dict(self.commits[-1].tree) if self.commits else {}

    def reset(self) -> None:
        self.commits = []
        self.tags = {}
        self.tree = {}

    def get_last_commit(self) -> Optional[datetime]:
        return self.commits[-1].timestamp if self.commits else None

    def commit(
        self,
        mutations: Sequence[Mutation],
        author: AuthorIdentity,
        timestamp: datetime,
        message: str,
        encoding: str = "utf-8",
    ) -> str:
        for mutation in mutations:
            self._apply(mutation)

        commit = MemoryCommit(
            commit_id=f"{len(self.commits) + 1:08d}",
            author=author,
            timestamp=timestamp,
            message=message,
            encoding=encoding,
            tree=dict(self.tree),
        )
        self.commits.append(commit)
        logger.debug(f"Committed {commit.commit_id} ({len(mutations)} changes)")
        return commit.commit_id

    def tag(
        self,
        name: str,
        commit_id: Optional[str] = None,
        author: Optional[AuthorIdentity] = None,
        timestamp: Optional[datetime] = None,
        message: Optional[str] = None,
    ) -> None:
        if commit_id is None:
            if not self.commits:
                raise BackendCommitError(f"Cannot tag {name}: no commits")
            commit_id = self.commits[-1].commit_id
        self.tags[name] = MemoryTag(name=name, commit_id=commit_id, message=message)

    def _apply(self, mutation: Mutation) -> None:
        if isinstance(mutation, WriteFile):
            self.tree[mutation.path] = mutation.data
        elif isinstance(mutation, DeleteFile):
            self.tree.pop(mutation.path, None)
        elif isinstance(mutation, DeleteDir):
            prefix = mutation.path + "/"
            for path in [p for p in self.tree if p.startswith(prefix)]:
                del self.tree[path]
        elif isinstance(mutation, MovePath):
            if mutation.old_path in self.tree:
                self.tree[mutation.new_path] = self.tree.pop(mutation.old_path)
                return
            old_prefix = mutation.old_path + "/"
            for path in [p for p in self.tree if p.startswith(old_prefix)]:
                new_path = mutation.new_path + "/" + path[len(old_prefix):]
                self.tree[new_path] = self.tree.pop(path)
        else:
            raise TypeError(f"Unknown mutation: {mutation!r}")
