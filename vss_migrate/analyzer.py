"""
History analyzer.

Walks a source project tree and gathers every item's revisions into one
stream sorted by timestamp. Runs as a single task on the pipeline WorkQueue.
"""

import logging
import re
import threading
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Pattern, Tuple

from pydantic import ValidationError

from vss_migrate.errors import RevisionRecordError
from vss_migrate.models import ItemAction, Revision
from vss_migrate.source import (
    HistorySource,
    SourceContainer,
    SourceItem,
    ROOT_NAME,
    split_path,
)
from vss_migrate.work_queue import WorkQueue


logger = logging.getLogger(__name__)

WILDCARD_CHARS = "*?"

# Actions that place an item in a project; records without a parent default to the current one
PLACEMENT_ACTIONS = frozenset({ItemAction.ADDED, ItemAction.SHARED, ItemAction.BRANCHED})


class ExclusionMatcher:
    """
    Matches item paths against exclusion patterns.

    Patterns are separated by ';' or newlines:
    - $/Project/old        excludes that path and everything below it
    - *.exe, **/bin/**     glob, '**' spans directories, '*' stays in one segment

    Glob patterns not rooted at $/ match at any depth. Matching ignores case.
    """

    def __init__(self, patterns: Optional[str] = None):
        self.patterns: List[str] = []
        self._prefixes: List[str] = []
        self._globs: List[Pattern] = []

        for raw in re.split(r"[;\n]", patterns or ""):
            pattern = raw.strip()
            if not pattern:
                continue
            self.patterns.append(pattern)
            if any(ch in pattern for ch in WILDCARD_CHARS):
                self._globs.append(self._compile_glob(pattern))
            else:
                self._prefixes.append(self._normalize(pattern).lower())

    def __bool__(self) -> bool:
        return bool(self.patterns)

    @staticmethod
    def _normalize(path: str) -> str:
        parts = split_path(path)
        return ROOT_NAME + "".join("/" + part for part in parts)

    @staticmethod
    def _compile_glob(pattern: str) -> Pattern:
        text = pattern.replace("\\", "/")
        if text.startswith(ROOT_NAME + "/"):
            body = text[len(ROOT_NAME) + 1:]
            regex = re.escape(ROOT_NAME) + "/"
        else:
            body = text.lstrip("/")
            regex = re.escape(ROOT_NAME) + "/(?:.*/)?"

        i = 0
        while i < len(body):
            if body.startswith("**/", i):
                regex += "(?:.*/)?"
                i += 3
            elif body.startswith("**", i):
                regex += ".*"
                i += 2
            elif body[i] == "*":
                regex += "[^/]*"
                i += 1
            elif body[i] == "?":
                regex += "[^/]"
                i += 1
            else:
                regex += re.escape(body[i])
                i += 1

        return re.compile(regex + r"\Z", re.IGNORECASE)

    def matches(self, path: str) -> bool:
        """Check whether a $/... path is excluded."""
        normalized = self._normalize(path)
        folded = normalized.lower()

        for prefix in self._prefixes:
            if folded == prefix or folded.startswith(prefix + "/"):
                return True

        return any(glob.match(normalized) for glob in self._globs)


class RevisionAnalyzer:
    """
    Builds the global revision stream from a source tree.

    Counters and the sorted view may be read from any thread while the
    analysis task runs; they only ever grow.
    """

    def __init__(
        self,
        work_queue: WorkQueue,
        source: HistorySource,
        exclude_files: Optional[str] = None,
    ):
        """
        Initialize analyzer.

        Args:
            work_queue: Queue the analysis task is submitted to
            source: Source repository providing items and content
            exclude_files: Exclusion patterns (';' or newline separated)
        """
        self.work_queue = work_queue
        self.source = source
        self.exclude_files = exclude_files

        self.root_key: Optional[str] = None
        self.root_path: Optional[str] = None

        self._revisions: Dict[datetime, List[Revision]] = {}
        self._lock = threading.Lock()

        self._project_count = 0
        self._file_count = 0
        self._revision_count = 0
        self._excluded_count = 0
        self._skipped_count = 0
        self._complete = False

    # Counters

    @property
    def project_count(self) -> int:
        return self._project_count

    @property
    def file_count(self) -> int:
        return self._file_count

    @property
    def revision_count(self) -> int:
        return self._revision_count

    @property
    def excluded_count(self) -> int:
        return self._excluded_count

    @property
    def skipped_count(self) -> int:
        """Revision records that could not be read."""
        return self._skipped_count

    @property
    def is_complete(self) -> bool:
        return self._complete

    # Stream access

    def sorted_revisions(self) -> List[Tuple[datetime, List[Revision]]]:
        """
        Get the revision stream as (timestamp, revisions) pairs in time order.

        While analysis is running this is the part ingested so far.
        """
        with self._lock:
            buckets = [(ts, list(revs)) for ts, revs in self._revisions.items()]
        buckets.sort(key=lambda entry: entry[0])
        return buckets

    def iter_revisions(self) -> Iterator[Revision]:
        """Iterate all revisions in stream order."""
        for _, revisions in self.sorted_revisions():
            yield from revisions

    def get_content(self, revision: Revision) -> bytes:
        """Retrieve the content a revision refers to."""
        return self.source.get_content(revision)

    # Analysis

    def add_item(self, root: SourceContainer) -> None:
        """
        Queue analysis of a project tree.

        Args:
            root: Project to analyze; its key becomes the export root
        """
        self.root_key = root.key
        self.root_path = root.path
        self.work_queue.submit(
            lambda queue: self._analyze(queue, root),
            description=f"Analyze {root.path}"
        )

    def _analyze(self, queue: WorkQueue, root: SourceContainer) -> None:
        matcher = ExclusionMatcher(self.exclude_files)
        if matcher:
            logger.info(f"Excluding: {'; '.join(matcher.patterns)}")

        logger.info(f"Analyzing {root.path}...")
        queue.last_status = f"Analyzing {root.path}"

        stack: List[SourceItem] = [root]
        while stack:
            if queue.is_aborting:
                logger.info("Analysis cancelled")
                return

            item = stack.pop()
            path = item.path

            if item is not root and matcher and matcher.matches(path):
                logger.debug(f"Excluded: {path}")
                self._excluded_count += 1
                continue

            if isinstance(item, SourceContainer):
                self._project_count += 1
                queue.last_status = f"Analyzing {path}"
                # Reversed so children pop in stored order (pre-order traversal)
                stack.extend(reversed(item.children()))
            else:
                self._file_count += 1

            self._ingest(item)

        self._complete = True
        logger.info(
            f"Analysis complete: {self._project_count} projects, {self._file_count} files, "
            f"{self._revision_count} revisions"
        )
        if self._skipped_count:
            logger.warning(f"{self._skipped_count} unreadable revision record(s) skipped")

    def _ingest(self, item: SourceItem) -> None:
        for record in item.revision_records():
            try:
                revision = self._to_revision(item, record)
            except (ValidationError, RevisionRecordError) as e:
                self._skipped_count += 1
                logger.error(f"Skipping revision record of {item.path}: {e}")
                continue

            with self._lock:
                self._revisions.setdefault(revision.timestamp, []).append(revision)
            self._revision_count += 1

    def _to_revision(self, item: SourceItem, record) -> Revision:
        if isinstance(record, Revision):
            if record.item_key != item.key:
                raise RevisionRecordError(
                    f"Revision of {record.item_key} listed under {item.key}"
                )
            return record

        if not isinstance(record, dict):
            raise RevisionRecordError(f"Unsupported record type: {type(record).__name__}")

        fields = dict(record)
        fields.setdefault("item_key", item.key)
        fields.setdefault("is_container", item.is_container)
        fields.setdefault("name", item.name)
        for key in ("comment", "user", "label"):
            if isinstance(fields.get(key), bytes):
                fields[key] = fields[key].decode(self.source.encoding, errors="replace")

        revision = Revision.model_validate(fields)
        if revision.parent_key is None and revision.action in PLACEMENT_ACTIONS and item.parent is not None:
            revision = revision.model_copy(update={"parent_key": item.parent.key})
        return revision
