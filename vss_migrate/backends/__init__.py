"""
Target VCS backends.
"""

from vss_migrate.backends.base import (
    DeleteDir,
    DeleteFile,
    MovePath,
    Mutation,
    VcsBackend,
    WriteFile,
    sanitize_tag_name,
)
from vss_migrate.backends.git import GitBackend
from vss_migrate.backends.memory import MemoryBackend
from vss_migrate.backends.svn import SvnBackend
from vss_migrate.config import GitTarget, MemoryTarget, SvnTarget


def create_backend(target) -> VcsBackend:
    """
    Create the backend for a typed target.

    Args:
        target: GitTarget, SvnTarget or MemoryTarget

    Raises:
        ValueError: If the target type is not supported
    """
    if isinstance(target, GitTarget):
        return GitBackend(target.repo_path, force_annotated_tags=target.force_annotated_tags)
    if isinstance(target, SvnTarget):
        return SvnBackend(
            target.working_copy,
            target.repo_url,
            project_path=target.project_path,
            trunk=target.trunk,
            tags=target.tags,
            branches=target.branches,
            username=target.username,
            password=target.password,
        )
    if isinstance(target, MemoryTarget):
        return MemoryBackend()
    raise ValueError(f"Unsupported backend target: {target!r}")


__all__ = [
    "VcsBackend",
    "Mutation",
    "WriteFile",
    "DeleteFile",
    "DeleteDir",
    "MovePath",
    "sanitize_tag_name",
    "GitBackend",
    "SvnBackend",
    "MemoryBackend",
    "create_backend",
]
