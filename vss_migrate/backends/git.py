"""
Git backend.

Drives the git command line: the repository's working tree is the
materialization the exporter's mutations are applied to.
"""

import calendar
import logging
import os
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from vss_migrate.backends.base import Mutation, VcsBackend, apply_to_directory
from vss_migrate.errors import BackendCommitError
from vss_migrate.models import AuthorIdentity


logger = logging.getLogger(__name__)

UTF8_NAMES = {"utf-8", "utf8"}


def format_git_date(timestamp: datetime) -> str:
    """Format a naive UTC timestamp in git's internal date format."""
    return f"{calendar.timegm(timestamp.timetuple())} +0000"


class GitBackend(VcsBackend):
    """Exports to a git repository."""

    def __init__(
        self,
        repo_path: Path,
        force_annotated_tags: bool = False,
        git_executable: str = "git",
    ):
        """
        Initialize git backend.

        Args:
            repo_path: Repository directory (created if needed)
            force_annotated_tags: Create annotated tags even for labels without comment
            git_executable: git command to run
        """
        self.repo_path = Path(repo_path)
        self.force_annotated_tags = force_annotated_tags
        self.git_executable = git_executable

    # Helpers

    def _run(
        self,
        args: List[str],
        input: Optional[bytes] = None,
        env: Optional[Dict[str, str]] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run a git command in the repository."""
        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        try:
            result = subprocess.run(
                [self.git_executable, *args],
                cwd=self.repo_path,
                input=input,
                capture_output=True,
                env=full_env,
            )
        except OSError as e:
            raise BackendCommitError(f"Cannot run {self.git_executable}: {e}") from e

        if check and result.returncode != 0:
            raise BackendCommitError(
                f"git {args[0]} failed (exit {result.returncode})",
                output=result.stderr.decode("utf-8", errors="replace"),
            )
        return result

    def _has_repo(self) -> bool:
        return (self.repo_path / ".git").is_dir()

    def _has_head(self) -> bool:
        result = self._run(["rev-parse", "--verify", "-q", "HEAD"], check=False)
        return result.returncode == 0

    @staticmethod
    def _identity_env(identity: AuthorIdentity, timestamp: datetime) -> Dict[str, str]:
        date = format_git_date(timestamp)
        return {
            "GIT_AUTHOR_NAME": identity.name,
            "GIT_AUTHOR_EMAIL": identity.email,
            "GIT_AUTHOR_DATE": date,
            "GIT_COMMITTER_NAME": identity.name,
            "GIT_COMMITTER_EMAIL": identity.email,
            "GIT_COMMITTER_DATE": date,
        }

    # VcsBackend

    def init(self) -> None:
        self.repo_path.mkdir(parents=True, exist_ok=True)

        if not self._has_repo():
            logger.info(f"Initializing git repository: {self.repo_path}")
            self._run(["init", "-q"])
            self._run(["config", "core.autocrlf", "false"])
            self._run(["config", "core.quotepath", "false"])
            return

        if self._has_head():
            # Leftovers of an interrupted changeset
            self._run(["reset", "-q", "--hard", "HEAD"])
            self._run(["clean", "-q", "-f", "-d"])

    def reset(self) -> None:
        if self.repo_path.exists():
            logger.info(f"Resetting git repository: {self.repo_path}")
            for entry in self.repo_path.iterdir():
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
        self.init()

    def get_last_commit(self) -> Optional[datetime]:
        if not self._has_repo() or not self._has_head():
            return None

        result = self._run(["log", "-1", "--format=%at", "HEAD"])
        text = result.stdout.decode("ascii", errors="replace").strip()
        if not text:
            return None
        return datetime.fromtimestamp(int(text), tz=timezone.utc).replace(tzinfo=None)

    def commit(
        self,
        mutations: Sequence[Mutation],
        author: AuthorIdentity,
        timestamp: datetime,
        message: str,
        encoding: str = "utf-8",
    ) -> str:
        try:
            apply_to_directory(self.repo_path, mutations)
        except OSError as e:
            raise BackendCommitError(f"Cannot update working tree: {e}") from e

        self._run(["add", "-A", "--", "."])

        args: List[str] = []
        if encoding.lower() not in UTF8_NAMES:
            args += ["-c", f"i18n.commitEncoding={encoding}"]
        args += ["commit", "-q", "--allow-empty", "--allow-empty-message", "--no-verify", "-F", "-"]

        self._run(
            args,
            input=message.encode(encoding, errors="replace"),
            env=self._identity_env(author, timestamp),
        )

        result = self._run(["rev-parse", "HEAD"])
        return result.stdout.decode("ascii").strip()

    def tag(
        self,
        name: str,
        commit_id: Optional[str] = None,
        author: Optional[AuthorIdentity] = None,
        timestamp: Optional[datetime] = None,
        message: Optional[str] = None,
    ) -> None:
        if commit_id is None and not self._has_head():
            raise BackendCommitError(f"Cannot tag {name}: repository has no commits")

        target = commit_id or "HEAD"
        env = self._identity_env(author, timestamp) if author and timestamp else None

        if self.force_annotated_tags or message:
            self._run(
                ["tag", "-f", "-a", "-F", "-", name, target],
                input=(message or name).encode("utf-8"),
                env=env,
            )
        else:
            self._run(["tag", "-f", name, target], env=env)
