"""
VCS exporter.

Replays ordered changesets into a target backend: each changeset becomes
one commit, each label changeset a tag on the most recent commit. Runs as a
single task on the pipeline WorkQueue after the changeset build.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from vss_migrate.authors import AuthorMapping
from vss_migrate.backends.base import (
    DeleteDir,
    DeleteFile,
    Mutation,
    MovePath,
    VcsBackend,
    WriteFile,
    sanitize_tag_name,
)
from vss_migrate.errors import BackendCommitError
from vss_migrate.models import Changeset, ExportSummary, ItemAction, Revision
from vss_migrate.work_queue import WorkQueue


logger = logging.getLogger(__name__)

# (parent_key, name)
Location = Tuple[str, str]

ContentReader = Callable[[Revision], bytes]


class PathMapper:
    """
    Tracks where every item lives in the exported tree.

    Items are known by stable key. A container has at most one location; a
    shared file can live in several. Paths are resolved on demand so renaming
    or moving a project implicitly moves everything below it. Items whose
    parent chain does not reach the export root have no path and produce no
    mutations.
    """

    def __init__(self, root_key: str, read_content: Optional[ContentReader] = None):
        self.root_key = root_key
        self.read_content = read_content

        self._containers: Set[str] = {root_key}
        self._locations: Dict[str, List[Location]] = {}
        self._removed: Dict[str, List[Location]] = {}
        self._content: Dict[str, Revision] = {}

        # Moved out during the current changeset, not yet moved in elsewhere
        self._moved_out: Dict[str, List[str]] = {}

    # Paths

    def path_of(self, key: str, location: Optional[Location] = None) -> Optional[str]:
        """Resolve an item location to a path relative to the export root."""
        if key == self.root_key:
            return ""

        if location is None:
            locations = self._locations.get(key)
            if not locations:
                return None
            location = locations[0]

        parts = [location[1]]
        parent = location[0]
        seen = {key}
        while parent != self.root_key:
            if parent in seen:
                return None
            seen.add(parent)
            locations = self._locations.get(parent)
            if not locations:
                return None
            parent_key, name = locations[0]
            parts.append(name)
            parent = parent_key

        return "/".join(reversed(parts))

    def paths_of(self, key: str) -> List[str]:
        """All resolvable paths of an item."""
        if key == self.root_key:
            return [""]
        paths = []
        for location in self._locations.get(key, []):
            path = self.path_of(key, location)
            if path is not None:
                paths.append(path)
        return paths

    def is_container(self, key: str) -> bool:
        return key in self._containers

    def _descendant_leaves(self, container_key: str) -> List[Tuple[str, str]]:
        """(leaf key, path) pairs of live files below a container."""
        prefix = self.path_of(container_key)
        if prefix is None:
            return []
        result = []
        for key in self._locations:
            if key in self._containers:
                continue
            for path in self.paths_of(key):
                if not prefix or path.startswith(prefix + "/"):
                    result.append((key, path))
        return result

    # Replay

    def replay(self, revisions: Sequence[Revision]) -> None:
        """Apply the structural effect of revisions without producing mutations."""
        for revision in revisions:
            self._process(revision, None)
        self._moved_out.clear()

    def translate(self, revisions: Sequence[Revision]) -> List[Mutation]:
        """
        Translate one changeset's revisions into working tree mutations.

        Raises:
            MigrationError: If content cannot be retrieved
        """
        mutations: List[Mutation] = []
        for revision in revisions:
            self._process(revision, mutations)

        # Moved out of the export root for good
        for key, paths in self._moved_out.items():
            for path in paths:
                mutations.append(self._delete(key, path))
        self._moved_out.clear()

        return mutations

    def _process(self, revision: Revision, out: Optional[List[Mutation]]) -> None:
        key = revision.item_key
        if revision.is_container:
            self._containers.add(key)
        if revision.content_ref and not revision.is_container:
            self._content[key] = revision

        if key == self.root_key:
            if revision.action not in (ItemAction.ADDED, ItemAction.LABELED, ItemAction.MODIFIED):
                logger.debug(f"Ignoring {revision.action.value} of export root")
            return

        handler = self._handlers.get(revision.action)
        if handler is None:
            return
        handler(self, revision, out)

    def _emit_write(self, key: str, path: Optional[str], revision: Optional[Revision], out) -> None:
        if out is None or path is None:
            return
        if revision is None:
            revision = self._content.get(key)
        if revision is None or not revision.content_ref:
            out.append(WriteFile(path, b""))
            return
        out.append(WriteFile(path, self.read_content(revision)))

    def _delete(self, key: str, path: str) -> Mutation:
        return DeleteDir(path) if key in self._containers else DeleteFile(path)

    def _rematerialize(self, key: str, out) -> None:
        if out is None:
            return
        if key in self._containers:
            for leaf_key, path in self._descendant_leaves(key):
                self._emit_write(leaf_key, path, None, out)
        else:
            for path in self.paths_of(key):
                self._emit_write(key, path, None, out)

    def _selected(self, key: str, revision: Revision) -> List[Location]:
        """Locations a revision applies to (one for a shared file when parent_key is given)."""
        locations = self._locations.get(key, [])
        if revision.parent_key is None or key in self._containers:
            return list(locations)
        selected = [loc for loc in locations if loc[0] == revision.parent_key]
        if not selected and len(locations) == 1:
            return list(locations)
        return selected

    # Actions

    def _added(self, revision: Revision, out) -> None:
        key = revision.item_key
        if revision.parent_key is None:
            logger.warning(f"No parent for {revision.describe()}, not exported")
            return

        location = (revision.parent_key, revision.name)
        if key in self._containers:
            self._locations[key] = [location]
            return

        locations = self._locations.setdefault(key, [])
        if location not in locations:
            locations.append(location)
        self._emit_write(key, self.path_of(key, location), revision if revision.content_ref else None, out)

    def _modified(self, revision: Revision, out) -> None:
        key = revision.item_key
        if key in self._containers:
            return
        for path in self.paths_of(key):
            self._emit_write(key, path, revision, out)

    def _deleted(self, revision: Revision, out) -> None:
        key = revision.item_key
        selected = self._selected(key, revision)
        for location in selected:
            path = self.path_of(key, location)
            if out is not None and path is not None:
                out.append(self._delete(key, path))

        remaining = [loc for loc in self._locations.get(key, []) if loc not in selected]
        if selected:
            self._removed[key] = selected
        if remaining:
            self._locations[key] = remaining
        else:
            self._locations.pop(key, None)

    def _recovered(self, revision: Revision, out) -> None:
        key = revision.item_key
        if revision.parent_key is not None and revision.name:
            restored = [(revision.parent_key, revision.name)]
        else:
            restored = self._removed.pop(key, [])
        if not restored:
            logger.warning(f"Nothing to recover for {revision.describe()}")
            return

        locations = self._locations.setdefault(key, [])
        for location in restored:
            if location not in locations:
                locations.append(location)
        if key in self._containers:
            self._locations[key] = locations[-1:]

        if key in self._containers or not revision.content_ref:
            self._rematerialize(key, out)
        else:
            for path in self.paths_of(key):
                self._emit_write(key, path, revision, out)

    def _renamed(self, revision: Revision, out) -> None:
        key = revision.item_key
        locations = self._locations.get(key, [])
        selected = self._selected(key, revision)
        if revision.old_name:
            selected = [loc for loc in selected if loc[1].lower() == revision.old_name.lower()] or selected

        for location in selected:
            old_path = self.path_of(key, location)
            index = locations.index(location)
            locations[index] = (location[0], revision.name)
            new_path = self.path_of(key, locations[index])
            if out is not None and old_path is not None and new_path is not None and old_path != new_path:
                out.append(MovePath(old_path, new_path))

    def _moved_out_of(self, revision: Revision, out) -> None:
        key = revision.item_key
        locations = self._locations.get(key, [])
        if revision.parent_key is not None and locations and locations[0][0] != revision.parent_key:
            # Already moved in elsewhere
            return

        paths = self.paths_of(key)
        self._locations.pop(key, None)
        if paths:
            self._moved_out[key] = paths

    def _moved_in(self, revision: Revision, out) -> None:
        key = revision.item_key
        if revision.parent_key is None:
            logger.warning(f"No destination for {revision.describe()}")
            return

        name = revision.name or self._name_of(key)
        if name is None:
            logger.warning(f"Unknown name for {revision.describe()}, not exported")
            return

        old_paths = self._moved_out.pop(key, None)
        if old_paths is None:
            old_paths = self.paths_of(key)

        self._locations[key] = [(revision.parent_key, name)]
        new_path = self.path_of(key)

        if new_path is None:
            # Moved outside the export root
            if out is not None:
                out.extend(self._delete(key, path) for path in old_paths)
            return

        if old_paths:
            if out is not None and old_paths[0] != new_path:
                out.append(MovePath(old_paths[0], new_path))
                out.extend(self._delete(key, path) for path in old_paths[1:])
        else:
            self._rematerialize(key, out)

    def _shared(self, revision: Revision, out) -> None:
        key = revision.item_key
        if key in self._containers:
            logger.warning(f"Ignoring share of project: {revision.describe()}")
            return
        if revision.parent_key is None:
            logger.warning(f"No destination for {revision.describe()}")
            return

        name = revision.name or self._name_of(key)
        location = (revision.parent_key, name)
        locations = self._locations.setdefault(key, [])
        if location in locations:
            return
        locations.append(location)
        self._emit_write(key, self.path_of(key, location), None, out)

    def _branched(self, revision: Revision, out) -> None:
        key = revision.item_key
        source_key = revision.source_key
        location: Optional[Location] = None

        if source_key and source_key in self._locations:
            source_locations = self._locations[source_key]
            for loc in source_locations:
                if revision.parent_key is None or loc[0] == revision.parent_key:
                    location = loc
                    break
            if location is not None:
                source_locations.remove(location)
                if not source_locations:
                    del self._locations[source_key]
            if source_key in self._content and key not in self._content:
                self._content[key] = self._content[source_key]

        if revision.parent_key is not None and revision.name:
            location = (revision.parent_key, revision.name)
        if location is None:
            logger.warning(f"Unknown location for {revision.describe()}, not exported")
            return

        self._locations[key] = [location]
        if revision.content_ref:
            self._emit_write(key, self.path_of(key, location), revision, out)

    def _name_of(self, key: str) -> Optional[str]:
        for locations in (self._locations.get(key), self._removed.get(key)):
            if locations:
                return locations[0][1]
        return None

    _handlers = {
        ItemAction.ADDED: _added,
        ItemAction.MODIFIED: _modified,
        ItemAction.DELETED: _deleted,
        ItemAction.RECOVERED: _recovered,
        ItemAction.RENAMED: _renamed,
        ItemAction.MOVED_OUT: _moved_out_of,
        ItemAction.MOVED_IN: _moved_in,
        ItemAction.SHARED: _shared,
        ItemAction.BRANCHED: _branched,
    }


class VcsExporter:
    """
    Exports changesets to a VCS backend on the pipeline queue.

    Counters may be read from any thread while the export runs.
    """

    def __init__(
        self,
        work_queue: WorkQueue,
        analyzer,
        builder,
        backend: VcsBackend,
        author_mapping: Optional[AuthorMapping] = None,
        commit_encoding: str = "utf-8",
        reset_repo: bool = False,
    ):
        """
        Initialize exporter.

        Args:
            work_queue: Queue shared with the analyzer and builder (runs after them)
            analyzer: RevisionAnalyzer providing the export root and content
            builder: ChangesetBuilder providing ordered changesets
            backend: Target VCS
            author_mapping: User to identity mapping (with default email domain)
            commit_encoding: Encoding commit messages are stored in
            reset_repo: Discard existing target history before exporting
        """
        self.work_queue = work_queue
        self.analyzer = analyzer
        self.builder = builder
        self.backend = backend
        self.author_mapping = author_mapping if author_mapping is not None else AuthorMapping()
        self.commit_encoding = commit_encoding
        self.reset_repo = reset_repo

        self._commit_count = 0
        self._tag_count = 0
        self._skipped_count = 0
        self._cancelled = False
        self._last_timestamp: Optional[datetime] = None
        self._tag_names: Dict[str, str] = {}

    @property
    def commit_count(self) -> int:
        return self._commit_count

    @property
    def tag_count(self) -> int:
        return self._tag_count

    @property
    def skipped_count(self) -> int:
        """Changesets skipped because a previous run already exported them."""
        return self._skipped_count

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def summary(self) -> ExportSummary:
        return ExportSummary(
            commits=self._commit_count,
            tags=self._tag_count,
            skipped=self._skipped_count,
            cancelled=self._cancelled,
            last_timestamp=self._last_timestamp,
        )

    def export(self, continue_after: Optional[datetime] = None) -> None:
        """
        Queue the export task.

        Args:
            continue_after: Skip changesets at or before this timestamp
                (ignored when resetting the target)
        """
        self.work_queue.submit(
            lambda queue: self._export(queue, continue_after),
            description="Export changesets"
        )

    def _export(self, queue: WorkQueue, continue_after: Optional[datetime]) -> None:
        if self.reset_repo:
            if continue_after is not None:
                logger.info("Resetting target, ignoring previous export")
            continue_after = None
            queue.last_status = "Resetting target"
            self.backend.reset()
        else:
            queue.last_status = "Opening target"
            self.backend.init()

        if continue_after is not None:
            logger.info(f"Continuing after {continue_after}")

        mapper = PathMapper(self.analyzer.root_key, self.analyzer.get_content)
        changesets = self.builder.changesets
        total = len(changesets)
        logger.info(f"Exporting {total} changesets...")

        for index, changeset in enumerate(changesets, start=1):
            if queue.is_aborting:
                self._cancelled = True
                logger.info(f"Export cancelled after {self._commit_count} commits")
                return

            if continue_after is not None and changeset.timestamp <= continue_after:
                mapper.replay(changeset.revisions)
                if changeset.is_label:
                    # Earlier runs named this label; later labels dedupe against it
                    self._tag_name(changeset.label)
                self._skipped_count += 1
                continue

            queue.last_status = f"Exporting changeset {index} of {total}"
            try:
                if changeset.is_label:
                    self._export_label(changeset)
                else:
                    self._export_changeset(changeset, mapper)
            except BackendCommitError:
                raise
            except Exception as e:
                raise BackendCommitError(
                    f"Changeset {index} ({changeset.timestamp}, {changeset.user}) failed: {e}"
                ) from e

            self._last_timestamp = changeset.timestamp

        queue.last_status = f"Exported {self._commit_count} commits, {self._tag_count} tags"
        logger.info(
            f"Export complete: {self._commit_count} commits, {self._tag_count} tags, "
            f"{self._skipped_count} skipped"
        )

    def _export_changeset(self, changeset: Changeset, mapper: PathMapper) -> None:
        author = self.author_mapping.identity(changeset.user)
        mutations = mapper.translate(changeset.revisions)

        commit_id = self.backend.commit(
            mutations,
            author=author,
            timestamp=changeset.timestamp,
            message=changeset.comment,
            encoding=self.commit_encoding,
        )
        self._commit_count += 1
        logger.debug(f"Commit {commit_id}: {len(changeset)} revisions, {len(mutations)} changes")

    def _export_label(self, changeset: Changeset) -> None:
        label = changeset.label
        name = self._tag_name(label)
        if self._commit_count == 0 and self.backend.get_last_commit() is None:
            logger.warning(f"Skipping label '{label}': nothing committed yet")
            return

        revision = changeset.revisions[0]
        self.backend.tag(
            name,
            author=self.author_mapping.identity(changeset.user),
            timestamp=changeset.timestamp,
            message=revision.comment or None,
        )
        self._tag_count += 1
        logger.info(f"Tagged '{label}' as {name}")

    def _tag_name(self, label: str) -> str:
        """Sanitized tag name, unique per distinct label text."""
        if label in self._tag_names:
            return self._tag_names[label]

        base = sanitize_tag_name(label)
        used = set(self._tag_names.values())
        name = base
        suffix = 2
        while name in used:
            name = f"{base}_{suffix}"
            suffix += 1

        self._tag_names[label] = name
        return name
