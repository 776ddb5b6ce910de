"""
Subversion backend.

Exports into <repo>/<project>/<trunk> through a working copy, tagging by
copying trunk into the tags directory. Local file:// repositories are
created with svnadmin when missing.
"""

import logging
import os
import re
import shutil
import stat
import subprocess
import tempfile
import uuid
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence
from urllib.parse import unquote, urlparse

from vss_migrate.backends.base import MovePath, Mutation, VcsBackend, apply_to_directory
from vss_migrate.errors import BackendCommitError
from vss_migrate.models import AuthorIdentity


logger = logging.getLogger(__name__)

STD_TRUNK = "trunk"
STD_TAGS = "tags"
STD_BRANCHES = "branches"

LAYOUT_MESSAGE = "Create repository layout"

_COMMITTED_REVISION = re.compile(r"Committed revision (\d+)\.")


def format_svn_date(timestamp: datetime) -> str:
    """Format a naive UTC timestamp as an svn:date value."""
    return timestamp.strftime("%Y-%m-%dT%H:%M:%S.000000Z")


def parse_svn_date(text: str) -> datetime:
    """Parse an svn:date value into a naive UTC timestamp at second resolution."""
    value = datetime.strptime(text.strip()[:19], "%Y-%m-%dT%H:%M:%S")
    return value.replace(tzinfo=timezone.utc).replace(tzinfo=None)


class SvnBackend(VcsBackend):
    """Exports to a Subversion repository using a trunk/tags/branches layout."""

    def __init__(
        self,
        working_copy: Path,
        repo_url: str,
        project_path: str = "",
        trunk: str = STD_TRUNK,
        tags: str = STD_TAGS,
        branches: str = STD_BRANCHES,
        username: Optional[str] = None,
        password: Optional[str] = None,
        svn_executable: str = "svn",
        svnadmin_executable: str = "svnadmin",
    ):
        """
        Initialize Subversion backend.

        Args:
            working_copy: Local working copy of the trunk directory
            repo_url: Repository URL (file://, http(s)://, svn://) or local path
            project_path: Project directory inside the repository
            trunk: Trunk directory name
            tags: Tags directory name
            branches: Branches directory name
            username: Optional user for authentication
            password: Optional password for authentication
        """
        self.working_copy = Path(working_copy)
        self.repo_url = self._normalize_url(repo_url)
        self.project_path = project_path.strip("/")
        self.trunk = trunk.strip("/") or STD_TRUNK
        self.tags = tags.strip("/") or STD_TAGS
        self.branches = branches.strip("/") or STD_BRANCHES
        self.username = username
        self.password = password
        self.svn_executable = svn_executable
        self.svnadmin_executable = svnadmin_executable

    @staticmethod
    def _normalize_url(repo_url: str) -> str:
        if "://" in repo_url:
            return repo_url.rstrip("/")
        return Path(repo_url).resolve().as_uri()

    def _url(self, *parts: str) -> str:
        segments = [self.repo_url]
        if self.project_path:
            segments.append(self.project_path)
        segments.extend(part for part in parts if part)
        return "/".join(segments)

    @property
    def trunk_url(self) -> str:
        return self._url(self.trunk)

    def _local_repo_path(self) -> Optional[Path]:
        parsed = urlparse(self.repo_url)
        if parsed.scheme != "file":
            return None
        return Path(unquote(parsed.path))

    # Helpers

    def _auth_args(self) -> List[str]:
        args = ["--non-interactive", "--no-auth-cache"]
        if self.username:
            args += ["--username", self.username]
        if self.password:
            args += ["--password", self.password]
        return args

    def _run(
        self,
        args: List[str],
        cwd: Optional[Path] = None,
        check: bool = True,
        executable: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        command = [executable or self.svn_executable, *args]
        try:
            result = subprocess.run(command, cwd=cwd, capture_output=True, text=True)
        except OSError as e:
            raise BackendCommitError(f"Cannot run {command[0]}: {e}") from e

        if check and result.returncode != 0:
            raise BackendCommitError(
                f"{command[0]} {args[0]} failed (exit {result.returncode})",
                output=result.stderr,
            )
        return result

    def _exists(self, url: str) -> bool:
        result = self._run(["info", url, *self._auth_args()], check=False)
        return result.returncode == 0

    def _is_working_copy(self) -> bool:
        return (self.working_copy / ".svn").is_dir()

    def _create_local_repo(self, path: Path) -> None:
        logger.info(f"Creating Subversion repository: {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        self._run(["create", str(path)], executable=self.svnadmin_executable)

        # Allow setting svn:author and svn:date on committed revisions
        hook = path / "hooks" / "pre-revprop-change"
        hook.write_text("#!/bin/sh\nexit 0\n")
        hook.chmod(hook.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    # VcsBackend

    def init(self) -> None:
        local_repo = self._local_repo_path()
        if local_repo is not None and not local_repo.exists():
            self._create_local_repo(local_repo)

        if not self._exists(self.trunk_url):
            self._run([
                "mkdir", "--parents", "-m", LAYOUT_MESSAGE,
                self.trunk_url, self._url(self.tags), self._url(self.branches),
                *self._auth_args(),
            ])

        if not self._is_working_copy():
            self.working_copy.parent.mkdir(parents=True, exist_ok=True)
            self._run(["checkout", "-q", self.trunk_url, str(self.working_copy), *self._auth_args()])
            return

        # Leftovers of an interrupted changeset
        self._run(["revert", "-q", "-R", "."], cwd=self.working_copy)
        self._run(["cleanup", "--remove-unversioned"], cwd=self.working_copy)
        self._run(["update", "-q", *self._auth_args()], cwd=self.working_copy)

    def reset(self) -> None:
        if self.working_copy.exists():
            logger.info(f"Removing working copy: {self.working_copy}")
            shutil.rmtree(self.working_copy)

        local_repo = self._local_repo_path()
        if local_repo is not None and not self.project_path:
            if local_repo.exists():
                logger.info(f"Removing repository: {local_repo}")
                shutil.rmtree(local_repo)
        elif self._exists(self._url()):
            self._run(["delete", "-m", "Reset export", self._url(), *self._auth_args()])

        self.init()

    def get_last_commit(self) -> Optional[datetime]:
        if self._local_repo_path() is not None and not self._local_repo_path().exists():
            return None

        last = self._trunk_log_entry("-l", "1")
        if last is None:
            return None

        # The oldest trunk revision is the layout revision that created it
        first = self._trunk_log_entry("-r", "1:HEAD", "-l", "1")
        if first is not None and first.get("revision") == last.get("revision"):
            return None

        date = last.findtext("date")
        return parse_svn_date(date) if date else None

    def _trunk_log_entry(self, *args: str) -> Optional[ET.Element]:
        result = self._run(["log", "--xml", *args, self.trunk_url, *self._auth_args()], check=False)
        if result.returncode != 0:
            return None
        return ET.fromstring(result.stdout).find("logentry")

    def commit(
        self,
        mutations: Sequence[Mutation],
        author: AuthorIdentity,
        timestamp: datetime,
        message: str,
        encoding: str = "utf-8",
    ) -> str:
        for mutation in mutations:
            if isinstance(mutation, MovePath) and self._can_move(mutation):
                # Versioned move keeps the file's history
                self._schedule_changes()
                self._run(
                    ["move", "-q", "--parents", mutation.old_path, mutation.new_path],
                    cwd=self.working_copy,
                )
                continue
            try:
                apply_to_directory(self.working_copy, [mutation])
            except OSError as e:
                raise BackendCommitError(f"Cannot update working copy: {e}") from e

        self._schedule_changes()

        match = self._commit_working_copy(message, encoding)
        if match is None:
            # Nothing changed: touch a property so the changeset still gets a revision
            self._run(
                ["propset", "vss-migrate:changeset", uuid.uuid4().hex, "."],
                cwd=self.working_copy,
            )
            match = self._commit_working_copy(message, encoding)
            if match is None:
                raise BackendCommitError("svn commit did not create a revision")

        revision = match.group(1)
        self._set_revprops(revision, author, timestamp)
        self._run(["update", "-q", *self._auth_args()], cwd=self.working_copy)
        return revision

    def _commit_working_copy(self, message: str, encoding: str) -> Optional["re.Match"]:
        with tempfile.NamedTemporaryFile(mode="wb", suffix=".msg", delete=False) as msg_file:
            msg_file.write(message.encode(encoding, errors="replace"))
            msg_path = msg_file.name

        try:
            result = self._run(
                ["commit", "--encoding", encoding, "-F", msg_path, *self._auth_args()],
                cwd=self.working_copy,
            )
        finally:
            os.unlink(msg_path)

        return _COMMITTED_REVISION.search(result.stdout)

    def _can_move(self, mutation: MovePath) -> bool:
        source = self.working_copy / mutation.old_path
        target = self.working_copy / mutation.new_path
        return source.exists() and not target.exists()

    def _schedule_changes(self) -> None:
        """Schedule new files for addition and vanished ones for deletion."""
        self._run(["add", "-q", "--force", "--parents", "."], cwd=self.working_copy)
        for missing in self._missing_paths():
            self._run(["delete", "-q", "--force", missing], cwd=self.working_copy)

    def _missing_paths(self) -> List[str]:
        result = self._run(["status", "--xml"], cwd=self.working_copy)
        root = ET.fromstring(result.stdout)
        return [
            entry.get("path")
            for entry in root.iter("entry")
            if entry.find("wc-status") is not None
            and entry.find("wc-status").get("item") == "missing"
        ]

    def _set_revprops(self, revision: str, author: AuthorIdentity, timestamp: datetime) -> None:
        auth = self._auth_args()
        self._run(["propset", "--revprop", "-r", revision, "svn:author", author.name, self.repo_url, *auth])
        self._run(["propset", "--revprop", "-r", revision, "svn:date", format_svn_date(timestamp),
                   self.repo_url, *auth])

    def tag(
        self,
        name: str,
        commit_id: Optional[str] = None,
        author: Optional[AuthorIdentity] = None,
        timestamp: Optional[datetime] = None,
        message: Optional[str] = None,
    ) -> None:
        source = f"{self.trunk_url}@{commit_id}" if commit_id else self.trunk_url
        tag_url = self._url(self.tags, name)
        auth = self._auth_args()

        if self._exists(tag_url):
            self._run(["delete", "-m", f"Replace tag {name}", tag_url, *auth])

        result = self._run(["copy", source, tag_url, "-m", message or f"Tag {name}", *auth])
        match = _COMMITTED_REVISION.search(result.stdout)
        if match and author and timestamp:
            self._set_revprops(match.group(1), author, timestamp)
