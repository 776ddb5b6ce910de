"""
Data models for the migration pipeline.

Defines Pydantic models for revisions, changesets, status snapshots and
run results.
"""

from enum import Enum
from datetime import datetime, timedelta, timezone
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict


class ItemAction(str, Enum):
    """Kind of historical event recorded on an item."""
    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"
    RENAMED = "Renamed"
    MOVED_IN = "MovedIn"
    MOVED_OUT = "MovedOut"
    SHARED = "Shared"
    BRANCHED = "Branched"
    LABELED = "Labeled"
    RECOVERED = "Recovered"

    @classmethod
    def _missing_(cls, value):
        # Dump files are not consistent about case ("added", "MOVEDIN")
        if isinstance(value, str):
            folded = value.replace("_", "").replace(" ", "").lower()
            for member in cls:
                if member.value.lower() == folded:
                    return member
        return None


# Actions that carry file content for a leaf item
CONTENT_ACTIONS = frozenset({
    ItemAction.ADDED,
    ItemAction.MODIFIED,
    ItemAction.BRANCHED,
    ItemAction.RECOVERED,
})


class RunState(str, Enum):
    """Terminal or current state of a pipeline run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Revision(BaseModel):
    """
    One immutable historical event on an item.

    References the item by its stable key, never by path, so the record stays
    valid across renames and moves.
    """

    model_config = ConfigDict(frozen=True)

    item_key: str = Field(..., min_length=1, description="Stable physical key of the item")
    version: int = Field(..., ge=1, description="Version number, monotonic per item")
    timestamp: datetime = Field(..., description="When the event happened (naive UTC)")
    user: str = Field(..., min_length=1, description="Raw author name")
    action: ItemAction
    comment: str = Field(default="", description="Free-text check-in comment")

    # Structure of the event
    is_container: bool = Field(default=False, description="True for project (directory) items")
    name: Optional[str] = Field(default=None, description="Item name after the event")
    old_name: Optional[str] = Field(default=None, description="Name before a rename")
    parent_key: Optional[str] = Field(default=None, description="Project the event places the item in")
    source_key: Optional[str] = Field(default=None, description="Shared item a branch splits from")
    label: Optional[str] = Field(default=None, description="Label text for Labeled events")

    # Content retrieval
    content_ref: Optional[str] = Field(default=None, description="Reference to retrievable content")

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        """Store naive UTC at second resolution so backends can round-trip it."""
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v.replace(microsecond=0)

    @field_validator("comment", mode="before")
    @classmethod
    def default_comment(cls, v):
        return "" if v is None else v

    @field_validator("user")
    @classmethod
    def strip_user(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("user must not be blank")
        return v

    @model_validator(mode="after")
    def check_action_fields(self) -> "Revision":
        """Require the detail fields an action cannot be replayed without."""
        if self.action == ItemAction.LABELED and not self.label:
            raise ValueError("Labeled revision requires a label")
        if self.action in (ItemAction.RENAMED, ItemAction.ADDED) and not self.name:
            raise ValueError(f"{self.action.value} revision requires a name")
        return self

    @property
    def user_key(self) -> str:
        """Case-insensitive author key."""
        return self.user.lower()

    @property
    def is_label(self) -> bool:
        return self.action == ItemAction.LABELED

    def describe(self) -> str:
        """Short one-line description for logs."""
        text = f"{self.item_key}#{self.version} {self.action.value}"
        if self.name:
            text += f" {self.name}"
        if self.label:
            text += f" '{self.label}'"
        return text


class Changeset(BaseModel):
    """
    A group of revisions judged to be one logical unit of work.

    The representative timestamp is the last member's; the representative
    comment is the first non-empty member comment.
    """

    user: str
    revisions: List[Revision] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_members(self) -> "Changeset":
        if not self.revisions:
            raise ValueError("Changeset requires at least one revision")
        return self

    @property
    def timestamp(self) -> datetime:
        return self.revisions[-1].timestamp

    @property
    def start_timestamp(self) -> datetime:
        return self.revisions[0].timestamp

    @property
    def comment(self) -> str:
        for revision in self.revisions:
            if revision.comment:
                return revision.comment
        return ""

    @property
    def is_label(self) -> bool:
        return len(self.revisions) == 1 and self.revisions[0].is_label

    @property
    def label(self) -> Optional[str]:
        return self.revisions[0].label if self.is_label else None

    def add(self, revision: Revision) -> None:
        """Append a revision to this changeset."""
        self.revisions.append(revision)

    def __len__(self) -> int:
        return len(self.revisions)


class AuthorIdentity(BaseModel):
    """Resolved commit identity."""

    model_config = ConfigDict(frozen=True)

    name: str
    email: str

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"


class QueueStatus(BaseModel):
    """Immutable snapshot of a WorkQueue."""

    model_config = ConfigDict(frozen=True)

    name: str
    is_idle: bool
    is_aborting: bool
    pending: int = 0
    last_status: Optional[str] = None
    active_time: timedelta = timedelta(0)

    # Outcome of the most recent busy period
    last_aborted: bool = False
    last_failed: bool = False


class ExportSummary(BaseModel):
    """Counters of one export run."""

    commits: int = 0
    tags: int = 0
    skipped: int = 0
    cancelled: bool = False
    last_timestamp: Optional[datetime] = None


class PipelineStatus(BaseModel):
    """
    Immutable progress snapshot of a migration run.

    Built on demand by MigrationPipeline.status() so pollers never read
    counters while they are half-updated.
    """

    model_config = ConfigDict(frozen=True)

    state: RunState = RunState.IDLE
    last_status: Optional[str] = None
    active_time: timedelta = timedelta(0)

    project_count: int = 0
    file_count: int = 0
    revision_count: int = 0
    changeset_count: int = 0

    commit_count: int = 0
    tag_count: int = 0
    skipped_count: int = 0

    continue_after: Optional[datetime] = None
    errors: List[str] = Field(default_factory=list)


class StartResult(BaseModel):
    """Outcome of asking the pipeline to start a run."""

    ok: bool
    error_kind: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls) -> "StartResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: Exception) -> "StartResult":
        return cls(ok=False, error_kind=type(error).__name__, message=str(error))
