"""
Exception types for the migration pipeline.

Fatal conditions raised inside queued work are captured by the WorkQueue and
handed back through fetch_exceptions(); the rest are reported or logged where
they occur.
"""

from typing import Optional


class MigrationError(Exception):
    """Base exception for migration errors."""

    pass


class InvalidPathError(MigrationError):
    """Source path does not resolve to an existing item."""

    def __init__(self, path: str, message: Optional[str] = None):
        self.path = path
        super().__init__(message or f"Path not found: {path}")


class NotAContainerError(MigrationError):
    """Path resolves to a file where a project was required."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"{path} is not a project")


class RevisionRecordError(MigrationError):
    """A single revision record could not be read or parsed."""

    pass


class SourceUnreachableError(MigrationError):
    """The source store could not be read."""

    pass


class BackendCommitError(MigrationError):
    """Applying a changeset to the target VCS failed."""

    def __init__(self, message: str, output: Optional[str] = None):
        self.output = output
        if output:
            message = f"{message}\n{output.strip()}"
        super().__init__(message)


class ConfigurationIOError(MigrationError):
    """A settings or mapping file could not be read or written."""

    pass
