"""
Abstract VCS backend interface.

Every target VCS implements this interface so the exporter can replay
changesets without knowing how the target stores history.
"""

import logging
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence, Union

from vss_migrate.models import AuthorIdentity


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteFile:
    """Create or overwrite a file."""

    path: str
    data: bytes


@dataclass(frozen=True)
class DeleteFile:
    """Remove a file."""

    path: str


@dataclass(frozen=True)
class DeleteDir:
    """Remove a directory and everything below it."""

    path: str


@dataclass(frozen=True)
class MovePath:
    """Rename a file or directory."""

    old_path: str
    new_path: str


Mutation = Union[WriteFile, DeleteFile, DeleteDir, MovePath]


class VcsBackend(ABC):
    """
    Abstract target VCS.

    Commits are applied in submission order; after N commits
    get_last_commit() returns exactly the timestamp given to the Nth.
    """

    @abstractmethod
    def init(self) -> None:
        """
        Prepare the target, keeping any existing history.

        Uncommitted leftovers of an interrupted run are discarded.
        """
        pass

    @abstractmethod
    def reset(self) -> None:
        """Re-create the target, discarding all existing history."""
        pass

    @abstractmethod
    def get_last_commit(self) -> Optional[datetime]:
        """
        Get the timestamp of the most recent commit.

        Returns:
            Timestamp, or None if the target is empty or absent
        """
        pass

    @abstractmethod
    def commit(
        self,
        mutations: Sequence[Mutation],
        author: AuthorIdentity,
        timestamp: datetime,
        message: str,
        encoding: str = "utf-8",
    ) -> str:
        """
        Apply mutations and record them as one commit.

        Args:
            mutations: Working tree changes, applied in order
            author: Commit author
            timestamp: Commit date (naive UTC)
            message: Commit message
            encoding: Encoding the message is stored in

        Returns:
            Commit identifier

        Raises:
            BackendCommitError: If the commit could not be recorded
        """
        pass

    @abstractmethod
    def tag(
        self,
        name: str,
        commit_id: Optional[str] = None,
        author: Optional[AuthorIdentity] = None,
        timestamp: Optional[datetime] = None,
        message: Optional[str] = None,
    ) -> None:
        """
        Tag a commit.

        Args:
            name: Tag name (already sanitized)
            commit_id: Commit to tag; None tags the most recent commit
            author: Tagger identity
            timestamp: Tag date
            message: Tag message
        """
        pass

    def close(self) -> None:
        """Release resources held by the backend."""
        pass


_TAG_INVALID = re.compile(r"[\x00-\x20\x7f~^:?*\[\\]+")


def sanitize_tag_name(label: str) -> str:
    """
    Turn a label into a valid tag name.

    Applies the git reference name rules, which are stricter than
    Subversion's directory names.
    """
    name = _TAG_INVALID.sub("_", label.strip())
    name = name.replace("@{", "_")
    while ".." in name:
        name = name.replace("..", ".")
    name = "/".join(part.lstrip(".") for part in name.split("/") if part)
    name = name.lstrip("-")
    while name.endswith(".lock") or name.endswith(".") or name.endswith("/"):
        if name.endswith(".lock"):
            name = name[:-len(".lock")]
        else:
            name = name[:-1]
    return name or "label"


def apply_to_directory(root: Path, mutations: Sequence[Mutation]) -> List[str]:
    """
    Apply mutations to a working directory.

    Args:
        root: Working tree root
        mutations: Mutations, applied in order

    Returns:
        Relative paths touched
    """
    touched: List[str] = []
    root = Path(root)

    for mutation in mutations:
        if isinstance(mutation, WriteFile):
            target = root / mutation.path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(mutation.data)
            touched.append(mutation.path)

        elif isinstance(mutation, DeleteFile):
            target = root / mutation.path
            if target.exists():
                target.unlink()
            else:
                logger.debug(f"Delete of missing file: {mutation.path}")
            touched.append(mutation.path)

        elif isinstance(mutation, DeleteDir):
            target = root / mutation.path
            if target.exists():
                shutil.rmtree(target)
            touched.append(mutation.path)

        elif isinstance(mutation, MovePath):
            source = root / mutation.old_path
            target = root / mutation.new_path
            if not source.exists():
                logger.debug(f"Move of missing path: {mutation.old_path}")
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            if source.resolve() == target.resolve() and source.name != target.name:
                # Case-only rename on a case-insensitive file system
                interim = source.with_name(source.name + ".vss-migrate-tmp")
                source.rename(interim)
                source = interim
            source.rename(target)
            touched.extend([mutation.old_path, mutation.new_path])

        else:
            raise TypeError(f"Unknown mutation: {mutation!r}")

    return touched
