"""
vss-migrate - Visual SourceSafe history migration to git or Subversion.

Rebuilds a per-file revision history as project-wide changesets and replays
them into a modern VCS, resuming where a previous run stopped.

Pipeline (one serialized WorkQueue):
- RevisionAnalyzer   - gathers every item's revisions into one time-ordered stream
- ChangesetBuilder   - groups revisions into changesets by author, time and comment
- VcsExporter        - commits each changeset, tags each label
"""

__version__ = "1.0.0"

from vss_migrate.models import (
    Revision,
    Changeset,
    ItemAction,
    RunState,
    PipelineStatus,
    StartResult,
)

from vss_migrate.config import ConfigManager, MigrationSettings, VcsType, DEFAULT_SETTINGS_FILE
from vss_migrate.work_queue import WorkQueue
from vss_migrate.analyzer import RevisionAnalyzer, ExclusionMatcher
from vss_migrate.changesets import ChangesetBuilder, group_changesets
from vss_migrate.exporter import VcsExporter, PathMapper
from vss_migrate.pipeline import MigrationPipeline

__all__ = [
    # Models
    "Revision",
    "Changeset",
    "ItemAction",
    "RunState",
    "PipelineStatus",
    "StartResult",
    # Config
    "ConfigManager",
    "MigrationSettings",
    "VcsType",
    "DEFAULT_SETTINGS_FILE",
    # Components
    "WorkQueue",
    "RevisionAnalyzer",
    "ExclusionMatcher",
    "ChangesetBuilder",
    "group_changesets",
    "VcsExporter",
    "PathMapper",
    "MigrationPipeline",
]
