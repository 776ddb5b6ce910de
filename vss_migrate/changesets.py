"""
Changeset builder.

Groups the analyzer's per-file revision stream into logical multi-file
changesets using a time/comment heuristic.
"""

import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from vss_migrate.analyzer import RevisionAnalyzer
from vss_migrate.models import Changeset, Revision
from vss_migrate.work_queue import WorkQueue


logger = logging.getLogger(__name__)

DEFAULT_ANY_COMMENT_THRESHOLD = timedelta(seconds=30)
DEFAULT_SAME_COMMENT_THRESHOLD = timedelta(seconds=600)


class ChangesetGrouper:
    """
    Incremental grouping state.

    Holds at most one open changeset per author. Revisions must be added in
    stream order.

    Rules:
    - Same author, gap <= any_comment_threshold: join the open changeset
    - Same author, same comment, gap <= same_comment_threshold: join
    - A revision from another author seals the other authors' open changesets
    - A label seals everything open and becomes its own changeset
    """

    def __init__(
        self,
        any_comment_threshold: timedelta = DEFAULT_ANY_COMMENT_THRESHOLD,
        same_comment_threshold: timedelta = DEFAULT_SAME_COMMENT_THRESHOLD,
    ):
        self.any_comment_threshold = any_comment_threshold
        self.same_comment_threshold = same_comment_threshold

        self.sealed: List[Changeset] = []
        self._open: Dict[str, Changeset] = {}

    def add(self, revision: Revision) -> None:
        author = revision.user_key

        if revision.is_label:
            self._seal_all()
            self._seal(Changeset(user=revision.user, revisions=[revision]))
            return

        # Other authors' open work ends here; keeping it open would let its
        # time window interleave with this author's changeset.
        for other in [key for key in self._open if key != author]:
            self._seal(self._open.pop(other))

        current = self._open.get(author)
        if current is not None and self._joins(current, revision):
            current.add(revision)
            return

        if current is not None:
            self._seal(self._open.pop(author))
        self._open[author] = Changeset(user=revision.user, revisions=[revision])

    def _joins(self, changeset: Changeset, revision: Revision) -> bool:
        gap = revision.timestamp - changeset.timestamp
        if gap <= self.any_comment_threshold:
            return True
        return revision.comment == changeset.comment and gap <= self.same_comment_threshold

    def finish(self) -> List[Changeset]:
        """
        Seal remaining open changesets.

        Returns:
            All changesets sorted by timestamp, ties kept in seal order
        """
        self._seal_all()
        return sorted(self.sealed, key=lambda changeset: changeset.timestamp)

    def _seal_all(self) -> None:
        # Open changesets are sealed oldest first
        for author in sorted(self._open, key=lambda key: self._open[key].timestamp):
            self._seal(self._open[author])
        self._open.clear()

    def _seal(self, changeset: Changeset) -> None:
        self.sealed.append(changeset)


def group_changesets(
    revisions: Iterable[Revision],
    any_comment_threshold: timedelta = DEFAULT_ANY_COMMENT_THRESHOLD,
    same_comment_threshold: timedelta = DEFAULT_SAME_COMMENT_THRESHOLD,
) -> List[Changeset]:
    """
    Group a time-ordered revision sequence into changesets.

    Args:
        revisions: Revisions in stream order
        any_comment_threshold: Max gap to join regardless of comment
        same_comment_threshold: Max gap to join when the comment matches

    Returns:
        Changesets partitioning the input, sorted by timestamp
    """
    grouper = ChangesetGrouper(any_comment_threshold, same_comment_threshold)
    for revision in revisions:
        grouper.add(revision)
    return grouper.finish()


class ChangesetBuilder:
    """Builds changesets from a completed analysis on the pipeline queue."""

    def __init__(
        self,
        work_queue: WorkQueue,
        analyzer: RevisionAnalyzer,
        any_comment_threshold: timedelta = DEFAULT_ANY_COMMENT_THRESHOLD,
        same_comment_threshold: timedelta = DEFAULT_SAME_COMMENT_THRESHOLD,
    ):
        """
        Initialize changeset builder.

        Args:
            work_queue: Queue shared with the analyzer (runs after it)
            analyzer: Analyzer providing the revision stream
            any_comment_threshold: Max gap to join regardless of comment
            same_comment_threshold: Max gap to join when the comment matches
        """
        if same_comment_threshold < any_comment_threshold:
            logger.warning(
                f"Same-comment threshold ({same_comment_threshold}) is below "
                f"any-comment threshold ({any_comment_threshold})"
            )

        self.work_queue = work_queue
        self.analyzer = analyzer
        self.any_comment_threshold = any_comment_threshold
        self.same_comment_threshold = same_comment_threshold

        self._grouper: Optional[ChangesetGrouper] = None
        self._changesets: List[Changeset] = []

    @property
    def changesets(self) -> List[Changeset]:
        """Final ordered changesets (empty until the build task finishes)."""
        return self._changesets

    @property
    def changeset_count(self) -> int:
        if self._changesets:
            return len(self._changesets)
        grouper = self._grouper
        return len(grouper.sealed) if grouper else 0

    def build_changesets(self) -> None:
        """Queue the build task behind the analysis."""
        self.work_queue.submit(self._build, description="Build changesets")

    def _build(self, queue: WorkQueue) -> None:
        logger.info("Building changesets...")
        queue.last_status = "Building changesets"

        grouper = ChangesetGrouper(self.any_comment_threshold, self.same_comment_threshold)
        self._grouper = grouper

        for _, revisions in self.analyzer.sorted_revisions():
            if queue.is_aborting:
                logger.info("Changeset build cancelled")
                return
            for revision in revisions:
                grouper.add(revision)

        changesets = grouper.finish()
        for index, changeset in enumerate(changesets, start=1):
            self._log_changeset(index, changeset)

        self._changesets = changesets
        logger.info(f"Found {len(changesets)} changesets")

    @staticmethod
    def _log_changeset(index: int, changeset: Changeset) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        kind = "Label" if changeset.is_label else "Changeset"
        logger.debug(f"{kind} {index} - {changeset.timestamp} ({changeset.user})")
        if changeset.comment:
            logger.debug(f"  Comment: {changeset.comment}")
        for revision in changeset.revisions:
            logger.debug(f"  {revision.describe()}")
