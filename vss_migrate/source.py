"""
Source repository readers.

The analyzer walks a tree of SourceItem objects obtained from a
HistorySource. Two readers ship with the package:

- MemorySource: a tree built in code (tests, embedding)
- DumpSource: a directory holding history.json plus content files,
  as written by an export tool run against the legacy database
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from vss_migrate.errors import (
    InvalidPathError,
    RevisionRecordError,
    SourceUnreachableError,
)
from vss_migrate.models import Revision


logger = logging.getLogger(__name__)

ROOT_NAME = "$"
PATH_SEPARATOR = "/"
DUMP_INDEX_FILE = "history.json"
DUMP_CONTENT_DIR = "content"

# A record is either an already-built Revision or raw fields for one
RevisionRecord = Union[Revision, Dict[str, Any]]


class SourceItem:
    """A versioned item (project or file) in the source tree."""

    is_container = False

    def __init__(
        self,
        key: str,
        name: str,
        records: Optional[List[RevisionRecord]] = None,
    ):
        self.key = key
        self.name = name
        self.parent: Optional["SourceContainer"] = None
        self._records: List[RevisionRecord] = list(records or [])

    @property
    def path(self) -> str:
        """Current path, e.g. $/Project/src/main.c."""
        if self.parent is None:
            return self.name
        return f"{self.parent.path}{PATH_SEPARATOR}{self.name}"

    def revision_records(self) -> Iterable[RevisionRecord]:
        """Raw revision records of this item, oldest first."""
        return list(self._records)

    def add_record(self, record: RevisionRecord) -> None:
        self._records.append(record)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.path!r}, key={self.key!r})"


class SourceLeaf(SourceItem):
    """A file: a leaf with its own revision history."""

    pass


class SourceContainer(SourceItem):
    """A project: ordered children with unique names."""

    is_container = True

    def __init__(
        self,
        key: str,
        name: str,
        records: Optional[List[RevisionRecord]] = None,
    ):
        super().__init__(key, name, records)
        self._children: List[SourceItem] = []

    def children(self) -> List[SourceItem]:
        """Child items in their stored order."""
        return list(self._children)

    def add(self, item: SourceItem) -> SourceItem:
        """
        Append a child item.

        Raises:
            ValueError: If a sibling already uses the name (case-insensitive)
        """
        if self.find_child(item.name) is not None:
            raise ValueError(f"Duplicate name in {self.path}: {item.name}")
        item.parent = self
        self._children.append(item)
        return item

    def find_child(self, name: str) -> Optional[SourceItem]:
        folded = name.lower()
        for child in self._children:
            if child.name.lower() == folded:
                return child
        return None


class HistorySource(ABC):
    """
    Abstract source repository.

    Implementations resolve paths to items and retrieve revision content.
    """

    encoding: str = "utf-8"

    @property
    @abstractmethod
    def base_path(self) -> Optional[Path]:
        """Directory of the source database (where emails.properties lives)."""
        pass

    @abstractmethod
    def get_item(self, path: str) -> SourceItem:
        """
        Resolve a path such as $/Project/src.

        Raises:
            InvalidPathError: If the path does not resolve
        """
        pass

    @abstractmethod
    def get_content(self, revision: Revision) -> bytes:
        """
        Retrieve the file content a revision refers to.

        Raises:
            RevisionRecordError: If the revision has no retrievable content
            SourceUnreachableError: If the store cannot be read
        """
        pass


def split_path(path: str) -> List[str]:
    """Split a $/a/b path into its name segments below the root."""
    text = path.strip().replace("\\", PATH_SEPARATOR)
    if text.startswith(ROOT_NAME):
        text = text[len(ROOT_NAME):]
    return [part for part in text.split(PATH_SEPARATOR) if part]


class MemorySource(HistorySource):
    """Source tree held in memory, with content keyed by content_ref."""

    def __init__(
        self,
        root: Optional[SourceContainer] = None,
        contents: Optional[Dict[str, bytes]] = None,
        base_path: Optional[Path] = None,
        encoding: str = "utf-8",
    ):
        self.root = root or SourceContainer("root", ROOT_NAME)
        self.contents: Dict[str, bytes] = dict(contents or {})
        self.encoding = encoding
        self._base_path = Path(base_path) if base_path else None

    @property
    def base_path(self) -> Optional[Path]:
        return self._base_path

    def get_item(self, path: str) -> SourceItem:
        item: SourceItem = self.root
        for part in split_path(path):
            if not isinstance(item, SourceContainer):
                raise InvalidPathError(path)
            child = item.find_child(part)
            if child is None:
                raise InvalidPathError(path)
            item = child
        return item

    def get_content(self, revision: Revision) -> bytes:
        if not revision.content_ref:
            raise RevisionRecordError(f"No content reference: {revision.describe()}")
        try:
            return self.contents[revision.content_ref]
        except KeyError:
            raise RevisionRecordError(
                f"Content not found for {revision.describe()}: {revision.content_ref}"
            ) from None


class DumpItem(BaseModel):
    """One item of a history.json dump."""

    key: str
    name: str
    container: bool = False
    revisions: List[Dict[str, Any]] = Field(default_factory=list)
    children: List["DumpItem"] = Field(default_factory=list)


class DumpIndex(BaseModel):
    """Top level of a history.json dump."""

    version: str = "1.0"
    encoding: str = "utf-8"
    root: DumpItem
    contents: Dict[str, str] = Field(default_factory=dict, description="Inline text contents by ref")


class DumpSource(MemorySource):
    """
    Source read from a dump directory.

    Layout:
        <dir>/history.json   - item tree with raw revision records
        <dir>/content/<ref>  - file content for each content_ref
    """

    def __init__(self, directory: Path, encoding: Optional[str] = None):
        """
        Open a dump directory.

        Args:
            directory: Path to the dump directory
            encoding: Source text encoding, overriding the one the index declares

        Raises:
            SourceUnreachableError: If the index is missing or unreadable
        """
        self.directory = Path(directory)
        index_file = self.directory / DUMP_INDEX_FILE

        try:
            data = json.loads(index_file.read_text(encoding="utf-8"))
            index = DumpIndex.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            raise SourceUnreachableError(f"Cannot read source index {index_file}: {e}") from e

        encoding = encoding or index.encoding
        try:
            contents = {ref: text.encode(encoding) for ref, text in index.contents.items()}
        except (LookupError, UnicodeEncodeError) as e:
            raise SourceUnreachableError(f"Cannot read source index {index_file} as {encoding}: {e}") from e

        super().__init__(
            root=self._build(index.root),
            contents=contents,
            base_path=self.directory,
            encoding=encoding,
        )
        logger.debug(f"Opened dump source {self.directory} ({encoding})")

    def _build(self, node: DumpItem) -> SourceItem:
        if not node.container:
            return SourceLeaf(node.key, node.name, node.revisions)

        container = SourceContainer(node.key, node.name, node.revisions)
        for child in node.children:
            container.add(self._build(child))
        return container

    def get_content(self, revision: Revision) -> bytes:
        if revision.content_ref and revision.content_ref in self.contents:
            return self.contents[revision.content_ref]
        if not revision.content_ref:
            raise RevisionRecordError(f"No content reference: {revision.describe()}")

        content_dir = (self.directory / DUMP_CONTENT_DIR).resolve()
        content_file = (content_dir / revision.content_ref).resolve()
        if content_dir not in content_file.parents:
            raise RevisionRecordError(f"Content reference escapes dump: {revision.content_ref}")

        try:
            return content_file.read_bytes()
        except FileNotFoundError:
            raise RevisionRecordError(
                f"Content not found for {revision.describe()}: {content_file}"
            ) from None
        except OSError as e:
            raise SourceUnreachableError(f"Cannot read {content_file}: {e}") from e


def open_source(directory: Path, encoding: Optional[str] = None) -> HistorySource:
    """Open the source database directory configured for a run."""
    return DumpSource(directory, encoding)
