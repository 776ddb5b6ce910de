"""
Migration pipeline.

Wires the analyzer, changeset builder and exporter onto one WorkQueue so the
stages run strictly one after another, and asks the target for its resume
cursor on a second, independent probe queue.
"""

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from vss_migrate.analyzer import RevisionAnalyzer
from vss_migrate.authors import EMAILS_FILE, AuthorMapping
from vss_migrate.backends import VcsBackend, create_backend
from vss_migrate.changesets import ChangesetBuilder
from vss_migrate.config import MigrationSettings
from vss_migrate.errors import MigrationError, NotAContainerError
from vss_migrate.exporter import VcsExporter
from vss_migrate.models import PipelineStatus, RunState, StartResult
from vss_migrate.source import HistorySource, SourceContainer, open_source
from vss_migrate.work_queue import WorkQueue


logger = logging.getLogger(__name__)


class MigrationPipeline:
    """
    One migration run: analyze, build changesets, export.

    start() only validates and queues work; progress is observed through
    status() and completion through wait().
    """

    def __init__(
        self,
        settings: MigrationSettings,
        source: Optional[HistorySource] = None,
        backend: Optional[VcsBackend] = None,
        dry_run: bool = False,
    ):
        """
        Initialize pipeline.

        Args:
            settings: Run settings
            source: Source to read (default: opened from settings.vss_directory)
            backend: Target backend (default: created from settings)
            dry_run: Export to an in-memory backend
        """
        self.settings = settings
        self.dry_run = dry_run
        self.source = source
        self.backend = backend

        self.work_queue = WorkQueue("pipeline")
        self.probe_queue = WorkQueue("probe")

        self.analyzer: Optional[RevisionAnalyzer] = None
        self.builder: Optional[ChangesetBuilder] = None
        self.exporter: Optional[VcsExporter] = None
        self.continue_after: Optional[datetime] = None

        self._started = False
        self._errors: List[str] = []
        self._errors_lock = threading.Lock()

    # Setup

    def _open_source(self) -> HistorySource:
        if self.source is None:
            self.source = open_source(Path(self.settings.vss_directory), self.settings.vss_encoding)
        return self.source

    def _open_backend(self) -> VcsBackend:
        if self.backend is None:
            target = self.settings.backend_target(self.dry_run)
            if target is None:
                raise MigrationError("No output directory configured")
            self.backend = create_backend(target)
        return self.backend

    def _resolve_root(self, source: HistorySource) -> SourceContainer:
        item = source.get_item(self.settings.vss_project)
        if not isinstance(item, SourceContainer):
            raise NotAContainerError(self.settings.vss_project)
        return item

    def _new_analyzer(self, source: HistorySource) -> RevisionAnalyzer:
        return RevisionAnalyzer(self.work_queue, source, self.settings.vss_exclude_paths)

    # Resume cursor

    def probe_resume_cursor(self, timeout: Optional[float] = None) -> Optional[datetime]:
        """
        Ask the target for the timestamp of its last commit.

        Runs on the probe queue and waits for the answer.

        Raises:
            MigrationError: If the target cannot be queried
        """
        backend = self._open_backend()
        result: List[Optional[datetime]] = []

        def probe(queue: WorkQueue) -> None:
            queue.last_status = "Probing target"
            result.append(backend.get_last_commit())

        self.probe_queue.submit(probe, description="Probe last commit")
        if not self.probe_queue.wait_idle(timeout):
            raise MigrationError("Timed out probing target")

        errors = self.probe_queue.fetch_exceptions()
        if errors:
            raise MigrationError(f"Cannot probe target: {errors[0]}") from errors[0]
        return result[0] if result else None

    # Control

    def start(self) -> StartResult:
        """
        Validate the run and queue all stages.

        Returns:
            StartResult; a failure leaves nothing queued
        """
        if not self.work_queue.is_idle:
            return StartResult.failure(MigrationError("Migration is already running"))

        try:
            source = self._open_source()
            root = self._resolve_root(source)
            backend = self._open_backend()

            continue_after = None
            if self.settings.continue_sync and not self.settings.reset_repo:
                continue_after = self.probe_resume_cursor()
        except MigrationError as e:
            logger.error(f"Cannot start migration: {e}")
            return StartResult.failure(e)

        authors = AuthorMapping.load(source.base_path, self.settings.default_email_domain)

        self.continue_after = continue_after
        self.analyzer = self._new_analyzer(source)
        self.builder = ChangesetBuilder(
            self.work_queue,
            self.analyzer,
            self.settings.any_comment_threshold,
            self.settings.same_comment_threshold,
        )
        self.exporter = VcsExporter(
            self.work_queue,
            self.analyzer,
            self.builder,
            backend,
            author_mapping=authors,
            commit_encoding="utf-8" if self.settings.transcode_comments else source.encoding,
            reset_repo=self.settings.reset_repo,
        )

        with self._errors_lock:
            self._errors = []
        self._started = True

        logger.info(f"Migrating {root.path} ({'dry run' if self.dry_run else self.settings.vcs_type.value})")
        self.analyzer.add_item(root)
        self.builder.build_changesets()
        self.exporter.export(continue_after)
        return StartResult.success()

    def dump_users(self, output: Optional[Path] = None) -> StartResult:
        """
        Queue an analysis that writes every unmapped user to the mapping file.

        Args:
            output: Mapping file (default: emails.properties in the source directory)
        """
        if not self.work_queue.is_idle:
            return StartResult.failure(MigrationError("Migration is already running"))

        try:
            source = self._open_source()
            root = self._resolve_root(source)
        except MigrationError as e:
            logger.error(f"Cannot dump users: {e}")
            return StartResult.failure(e)

        if output is None:
            base = source.base_path or Path.cwd()
            output = Path(base) / EMAILS_FILE

        analyzer = self._new_analyzer(source)
        self.analyzer = analyzer
        self.builder = None
        self.exporter = None

        def write_users(queue: WorkQueue) -> None:
            mapping = AuthorMapping.load(source.base_path, self.settings.default_email_domain)
            added = mapping.add_users(revision.user for revision in analyzer.iter_revisions())
            queue.last_status = f"Writing {output}"
            logger.info(f"{added} new user(s) found")
            mapping.save(output)

        with self._errors_lock:
            self._errors = []
        self._started = True

        analyzer.add_item(root)
        self.work_queue.submit(write_users, description="Dump users")
        return StartResult.success()

    def abort(self) -> None:
        """Cancel the run; the exporter stops between changesets."""
        self.work_queue.abort()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the run to finish.

        Returns:
            True if finished, False on timeout
        """
        return self.work_queue.wait_idle(timeout)

    def close(self) -> None:
        self.work_queue.close()
        self.probe_queue.close()
        if self.backend is not None:
            self.backend.close()

    # Status

    def _collect_errors(self) -> List[str]:
        with self._errors_lock:
            exceptions = self.work_queue.fetch_exceptions()
            if exceptions:
                self._errors.extend(str(e) for e in exceptions)
            return list(self._errors)

    def status(self) -> PipelineStatus:
        """Get an immutable snapshot of the run."""
        queue = self.work_queue.status()
        errors = self._collect_errors()

        if not self._started:
            state = RunState.IDLE
        elif not queue.is_idle:
            state = RunState.RUNNING
        elif errors or queue.last_failed:
            state = RunState.FAILED
        elif queue.last_aborted or (self.exporter is not None and self.exporter.cancelled):
            state = RunState.CANCELLED
        else:
            state = RunState.COMPLETED

        analyzer, builder, exporter = self.analyzer, self.builder, self.exporter
        return PipelineStatus(
            state=state,
            last_status=queue.last_status,
            active_time=queue.active_time,
            project_count=analyzer.project_count if analyzer else 0,
            file_count=analyzer.file_count if analyzer else 0,
            revision_count=analyzer.revision_count if analyzer else 0,
            changeset_count=builder.changeset_count if builder else 0,
            commit_count=exporter.commit_count if exporter else 0,
            tag_count=exporter.tag_count if exporter else 0,
            skipped_count=exporter.skipped_count if exporter else 0,
            continue_after=self.continue_after,
            errors=errors,
        )
