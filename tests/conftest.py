"""Test fixtures for vss-migrate tests."""

import pytest
from datetime import datetime, timedelta

from vss_migrate.backends.memory import MemoryBackend
from vss_migrate.models import ItemAction, Revision
from vss_migrate.source import MemorySource, SourceContainer, SourceLeaf
from vss_migrate.work_queue import WorkQueue


T0 = datetime(2024, 3, 1, 10, 0, 0)


def at(seconds: float = 0, minutes: float = 0) -> datetime:
    """Timestamp relative to T0."""
    return T0 + timedelta(minutes=minutes, seconds=seconds)


def make_revision(
    item_key: str = "f1",
    version: int = 1,
    timestamp: datetime = T0,
    user: str = "alice",
    action: ItemAction = ItemAction.MODIFIED,
    comment: str = "",
    **fields
) -> Revision:
    """Build a Revision with sensible defaults."""
    return Revision(
        item_key=item_key,
        version=version,
        timestamp=timestamp,
        user=user,
        action=action,
        comment=comment,
        **fields
    )


class CommitLimitBackend(MemoryBackend):
    """MemoryBackend that runs a callback after each commit."""

    def __init__(self, on_commit=None):
        super().__init__()
        self.on_commit = on_commit

    def commit(self, *args, **kwargs):
        commit_id = super().commit(*args, **kwargs)
        if self.on_commit:
            self.on_commit(len(self.commits))
        return commit_id


@pytest.fixture
def work_queue():
    """A WorkQueue closed after the test."""
    queue = WorkQueue("test")
    yield queue
    queue.close()


@pytest.fixture
def project_source():
    """
    A small source database:

        $/Proj        (p1)
          a.txt       (f1)  added by alice, modified by bob
          b.txt       (f2)  added by alice
        label 'v1.0' on $/Proj

    Changesets with default thresholds:
      1. alice  T0..T0+15s   Proj added, a.txt and b.txt added
      2. bob    T0+20min     a.txt modified
      3. label  T0+30min
    """
    root = SourceContainer("root", "$")
    proj = root.add(SourceContainer("p1", "Proj", [
        {"version": 1, "timestamp": at(0), "user": "alice", "action": "Added"},
        {"version": 2, "timestamp": at(minutes=30), "user": "alice", "action": "Labeled",
         "label": "v1.0", "comment": "First release"},
    ]))
    proj.add(SourceLeaf("f1", "a.txt", [
        {"version": 1, "timestamp": at(10), "user": "alice", "action": "Added",
         "comment": "initial", "content_ref": "f1v1"},
        {"version": 2, "timestamp": at(minutes=20), "user": "Bob", "action": "Modified",
         "comment": "fix", "content_ref": "f1v2"},
    ]))
    proj.add(SourceLeaf("f2", "b.txt", [
        {"version": 1, "timestamp": at(15), "user": "alice", "action": "Added",
         "comment": "initial", "content_ref": "f2v1"},
    ]))

    contents = {
        "f1v1": b"one\n",
        "f1v2": b"two\n",
        "f2v1": b"bee\n",
    }
    return MemorySource(root, contents)


@pytest.fixture
def five_changeset_source():
    """$/Proj with five files added an hour apart (five changesets, no labels)."""
    root = SourceContainer("root", "$")
    proj = root.add(SourceContainer("p1", "Proj"))
    contents = {}
    for index in range(5):
        key = f"f{index + 1}"
        proj.add(SourceLeaf(key, f"file{index + 1}.txt", [
            {"version": 1, "timestamp": at(minutes=60 * index), "user": "alice",
             "action": "Added", "comment": f"add {index + 1}", "content_ref": key},
        ]))
        contents[key] = f"content {index + 1}\n".encode()
    return MemorySource(root, contents)
