"""Tests for vss_migrate.exporter module."""

import pytest
from unittest.mock import Mock

from conftest import CommitLimitBackend, at, make_revision

from vss_migrate.analyzer import RevisionAnalyzer
from vss_migrate.authors import AuthorMapping
from vss_migrate.backends.base import DeleteDir, DeleteFile, MovePath, WriteFile
from vss_migrate.backends.memory import MemoryBackend
from vss_migrate.changesets import ChangesetBuilder
from vss_migrate.errors import BackendCommitError
from vss_migrate.exporter import PathMapper, VcsExporter
from vss_migrate.models import ItemAction


def content_of(revision):
    return f"<{revision.content_ref}>".encode()


def rev(key, action, version=1, **fields):
    return make_revision(key, version, at(version), action=action, **fields)


@pytest.fixture
def mapper():
    """Mapper rooted at p1 with src/ (d1) holding a.c (f1)."""
    mapper = PathMapper("p1", content_of)
    mapper.replay([
        rev("d1", ItemAction.ADDED, is_container=True, name="src", parent_key="p1"),
        rev("f1", ItemAction.ADDED, name="a.c", parent_key="d1", content_ref="a1"),
    ])
    return mapper


class TestPathMapper:
    """Tests for structure replay."""

    def test_add_writes_content(self, mapper):
        mutations = mapper.translate([
            rev("f2", ItemAction.ADDED, name="b.c", parent_key="d1", content_ref="b1"),
        ])
        assert mutations == [WriteFile("src/b.c", b"<b1>")]

    def test_add_container_emits_nothing(self, mapper):
        mutations = mapper.translate([
            rev("d2", ItemAction.ADDED, is_container=True, name="lib", parent_key="p1"),
        ])
        assert mutations == []
        assert mapper.path_of("d2") == "lib"

    def test_modify(self, mapper):
        mutations = mapper.translate([rev("f1", ItemAction.MODIFIED, 2, content_ref="a2")])
        assert mutations == [WriteFile("src/a.c", b"<a2>")]

    def test_rename_container_moves_descendants(self, mapper):
        mutations = mapper.translate([
            rev("d1", ItemAction.RENAMED, 2, is_container=True, name="source", old_name="src"),
        ])
        assert mutations == [MovePath("src", "source")]
        assert mapper.path_of("f1") == "source/a.c"

    def test_rename_file(self, mapper):
        mutations = mapper.translate([rev("f1", ItemAction.RENAMED, 2, name="main.c", old_name="a.c")])
        assert mutations == [MovePath("src/a.c", "src/main.c")]

    def test_delete_and_recover_file(self, mapper):
        assert mapper.translate([rev("f1", ItemAction.DELETED, 2)]) == [DeleteFile("src/a.c")]
        assert mapper.path_of("f1") is None

        mutations = mapper.translate([rev("f1", ItemAction.RECOVERED, 3)])
        assert mutations == [WriteFile("src/a.c", b"<a1>")]

    def test_delete_and_recover_container(self, mapper):
        assert mapper.translate([
            rev("d1", ItemAction.DELETED, 2, is_container=True),
        ]) == [DeleteDir("src")]
        assert mapper.path_of("f1") is None

        mutations = mapper.translate([rev("d1", ItemAction.RECOVERED, 3, is_container=True)])
        assert mutations == [WriteFile("src/a.c", b"<a1>")]

    def test_share_copies_file(self, mapper):
        mutations = mapper.translate([rev("f1", ItemAction.SHARED, 2, name="a.c", parent_key="p1")])

        assert mutations == [WriteFile("a.c", b"<a1>")]
        assert sorted(mapper.paths_of("f1")) == ["a.c", "src/a.c"]

    def test_modify_shared_file_writes_every_location(self, mapper):
        mapper.replay([rev("f1", ItemAction.SHARED, 2, name="a.c", parent_key="p1")])
        mutations = mapper.translate([rev("f1", ItemAction.MODIFIED, 3, content_ref="a3")])
        assert sorted(m.path for m in mutations) == ["a.c", "src/a.c"]

    def test_delete_one_shared_location(self, mapper):
        mapper.replay([rev("f1", ItemAction.SHARED, 2, name="a.c", parent_key="p1")])
        mutations = mapper.translate([rev("f1", ItemAction.DELETED, 3, parent_key="p1")])

        assert mutations == [DeleteFile("a.c")]
        assert mapper.paths_of("f1") == ["src/a.c"]

    def test_branch_splits_shared_file(self, mapper):
        mapper.replay([rev("f1", ItemAction.SHARED, 2, name="a.c", parent_key="p1")])
        mutations = mapper.translate([
            rev("f9", ItemAction.BRANCHED, 1, source_key="f1", parent_key="p1",
                name="a.c", content_ref="a9"),
        ])

        assert mutations == [WriteFile("a.c", b"<a9>")]
        assert mapper.paths_of("f1") == ["src/a.c"]
        assert mapper.paths_of("f9") == ["a.c"]

    def test_move_within_changeset(self, mapper):
        mapper.replay([rev("d2", ItemAction.ADDED, is_container=True, name="lib", parent_key="p1")])
        mutations = mapper.translate([
            rev("f1", ItemAction.MOVED_OUT, 2, parent_key="d1"),
            rev("f1", ItemAction.MOVED_IN, 3, parent_key="d2", name="a.c"),
        ])
        assert mutations == [MovePath("src/a.c", "lib/a.c")]

    def test_move_in_before_move_out(self, mapper):
        mapper.replay([rev("d2", ItemAction.ADDED, is_container=True, name="lib", parent_key="p1")])
        mutations = mapper.translate([
            rev("f1", ItemAction.MOVED_IN, 2, parent_key="d2", name="a.c"),
            rev("f1", ItemAction.MOVED_OUT, 3, parent_key="d1"),
        ])
        assert mutations == [MovePath("src/a.c", "lib/a.c")]

    def test_move_out_of_export_root_deletes(self, mapper):
        mutations = mapper.translate([
            rev("d1", ItemAction.MOVED_OUT, 2, is_container=True, parent_key="p1"),
        ])
        assert mutations == [DeleteDir("src")]

    def test_move_into_export_root_rematerializes(self, mapper):
        mapper.translate([rev("d1", ItemAction.MOVED_OUT, 2, is_container=True, parent_key="p1")])
        mutations = mapper.translate([
            rev("d1", ItemAction.MOVED_IN, 3, is_container=True, parent_key="p1", name="src2"),
        ])
        assert mutations == [WriteFile("src2/a.c", b"<a1>")]

    def test_items_outside_root_produce_nothing(self, mapper):
        mutations = mapper.translate([
            rev("f5", ItemAction.ADDED, name="x.c", parent_key="elsewhere", content_ref="x"),
        ])
        assert mutations == []

    def test_root_events_ignored(self, mapper):
        assert mapper.translate([rev("p1", ItemAction.DELETED, 2, is_container=True)]) == []
        assert mapper.path_of("f1") == "src/a.c"

    def test_replay_reads_no_content(self):
        read = Mock(return_value=b"")
        mapper = PathMapper("p1", read)
        mapper.replay([rev("f1", ItemAction.ADDED, name="a.c", parent_key="p1", content_ref="a1")])
        read.assert_not_called()
        assert mapper.path_of("f1") == "a.c"


def build_exporter(work_queue, source, backend, **kwargs):
    analyzer = RevisionAnalyzer(work_queue, source)
    builder = ChangesetBuilder(work_queue, analyzer)
    exporter = VcsExporter(work_queue, analyzer, builder, backend, **kwargs)
    analyzer.add_item(source.get_item("$/Proj"))
    builder.build_changesets()
    return exporter


class TestVcsExporter:
    """Exporting changesets to the memory backend."""

    def test_export_commits_and_tags(self, work_queue, project_source):
        backend = MemoryBackend()
        exporter = build_exporter(
            work_queue, project_source, backend,
            author_mapping=AuthorMapping({"bob": "Bob Smith <bob@example.com>"}, "example.com"),
        )
        exporter.export()
        assert work_queue.wait_idle(5)
        assert work_queue.fetch_exceptions() is None

        assert [c.tree for c in backend.commits] == [
            {"a.txt": b"one\n", "b.txt": b"bee\n"},
            {"a.txt": b"two\n", "b.txt": b"bee\n"},
        ]
        assert backend.commits[0].message == "initial"
        assert backend.commits[0].timestamp == at(15)
        assert str(backend.commits[0].author) == "alice <alice@example.com>"
        assert str(backend.commits[1].author) == "Bob Smith <bob@example.com>"

        assert backend.tags["v1.0"].commit_id == backend.commits[1].commit_id
        assert backend.tags["v1.0"].message == "First release"
        assert exporter.summary().commits == 2
        assert exporter.summary().tags == 1

    def test_every_changeset_is_one_commit(self, work_queue, five_changeset_source):
        backend = MemoryBackend()
        exporter = build_exporter(work_queue, five_changeset_source, backend)
        exporter.export()
        work_queue.wait_idle(5)

        assert len(backend.commits) == 5
        assert backend.get_last_commit() == at(minutes=240)

    def test_abort_stops_between_changesets(self, work_queue, five_changeset_source):
        backend = CommitLimitBackend(lambda n: work_queue.abort() if n == 3 else None)
        exporter = build_exporter(work_queue, five_changeset_source, backend)
        exporter.export()
        work_queue.wait_idle(5)

        assert len(backend.commits) == 3
        assert backend.get_last_commit() == at(minutes=120)
        assert exporter.cancelled is True
        assert work_queue.fetch_exceptions() is None

    def test_resume_is_idempotent(self, work_queue, project_source):
        backend = MemoryBackend()
        first = build_exporter(work_queue, project_source, backend)
        first.export()
        work_queue.wait_idle(5)
        commits = len(backend.commits)

        second = build_exporter(work_queue, project_source, backend)
        second.export(continue_after=backend.get_last_commit())
        work_queue.wait_idle(5)

        assert work_queue.fetch_exceptions() is None
        assert len(backend.commits) == commits
        assert second.commit_count == 0
        assert second.skipped_count == 2

    def test_resume_continues_with_replayed_paths(self, work_queue, project_source):
        backend = MemoryBackend()
        backend.commit([WriteFile("a.txt", b"one\n"), WriteFile("b.txt", b"bee\n")],
                       author=AuthorMapping().identity("alice"), timestamp=at(15), message="initial")

        exporter = build_exporter(work_queue, project_source, backend)
        exporter.export(continue_after=at(15))
        work_queue.wait_idle(5)

        assert exporter.skipped_count == 1
        assert exporter.commit_count == 1
        assert backend.commits[-1].tree == {"a.txt": b"two\n", "b.txt": b"bee\n"}

    def test_reset_ignores_continue_after(self, work_queue, project_source):
        backend = MemoryBackend()
        backend.commit([], author=AuthorMapping().identity("old"), timestamp=at(minutes=999), message="old")

        exporter = build_exporter(work_queue, project_source, backend, reset_repo=True)
        exporter.export(continue_after=at(minutes=999))
        work_queue.wait_idle(5)

        assert exporter.skipped_count == 0
        assert [c.message for c in backend.commits] == ["initial", "fix"]

    def test_label_before_first_commit_skipped(self, work_queue):
        from vss_migrate.source import MemorySource, SourceContainer

        root = SourceContainer("root", "$")
        root.add(SourceContainer("p1", "Proj", [
            {"version": 1, "timestamp": at(0), "user": "alice", "action": "Labeled", "label": "early"},
        ]))
        backend = MemoryBackend()
        exporter = build_exporter(work_queue, MemorySource(root), backend)
        exporter.export()
        work_queue.wait_idle(5)

        assert work_queue.fetch_exceptions() is None
        assert backend.tags == {}
        assert exporter.tag_count == 0

    def test_tag_names_sanitized_and_unique(self, work_queue):
        exporter = VcsExporter(work_queue, Mock(), Mock(), MemoryBackend())
        assert exporter._tag_name("Release 1.0") == "Release_1.0"
        assert exporter._tag_name("Release:1.0") == "Release_1.0_2"
        assert exporter._tag_name("Release 1.0") == "Release_1.0"

    def test_resumed_label_keeps_earlier_tag_names(self, work_queue):
        """Test that a new label does not take over a tag named by an earlier run."""
        from vss_migrate.source import MemorySource, SourceContainer, SourceLeaf

        root = SourceContainer("root", "$")
        proj = root.add(SourceContainer("p1", "Proj", [
            {"version": 1, "timestamp": at(0), "user": "alice", "action": "Added"},
            {"version": 2, "timestamp": at(minutes=10), "user": "alice", "action": "Labeled",
             "label": "Release 1.0"},
            {"version": 3, "timestamp": at(minutes=30), "user": "alice", "action": "Labeled",
             "label": "Release:1.0"},
        ]))
        proj.add(SourceLeaf("f1", "a.txt", [
            {"version": 1, "timestamp": at(10), "user": "alice", "action": "Added",
             "comment": "initial", "content_ref": "f1v1"},
            {"version": 2, "timestamp": at(minutes=20), "user": "bob", "action": "Modified",
             "comment": "fix", "content_ref": "f1v2"},
        ]))
        source = MemorySource(root, {"f1v1": b"one\n", "f1v2": b"two\n"})

        backend = MemoryBackend()
        first = build_exporter(work_queue, source, backend)
        first.export()
        work_queue.wait_idle(5)
        assert set(backend.tags) == {"Release_1.0", "Release_1.0_2"}

        second = build_exporter(work_queue, source, backend)
        second.export(continue_after=at(minutes=20))
        work_queue.wait_idle(5)

        assert work_queue.fetch_exceptions() is None
        assert second.tag_count == 1
        assert set(backend.tags) == {"Release_1.0", "Release_1.0_2"}
        assert backend.tags["Release_1.0"].commit_id == backend.commits[0].commit_id
        assert backend.tags["Release_1.0_2"].commit_id == backend.commits[1].commit_id

    def test_empty_author_mapping_keeps_email_domain(self, work_queue, project_source):
        backend = MemoryBackend()
        exporter = build_exporter(
            work_queue, project_source, backend,
            author_mapping=AuthorMapping({}, "example.com"),
        )
        exporter.export()
        work_queue.wait_idle(5)

        assert str(backend.commits[0].author) == "alice <alice@example.com>"

    def test_commit_encoding_passed_to_backend(self, work_queue, project_source):
        backend = MemoryBackend()
        exporter = build_exporter(work_queue, project_source, backend, commit_encoding="cp1252")
        exporter.export()
        work_queue.wait_idle(5)
        assert {c.encoding for c in backend.commits} == {"cp1252"}

    def test_backend_failure_is_fatal(self, work_queue, project_source):
        def fail(count):
            raise BackendCommitError("disk full")

        backend = CommitLimitBackend(fail)
        exporter = build_exporter(work_queue, project_source, backend)
        exporter.export()
        work_queue.wait_idle(5)

        exceptions = work_queue.fetch_exceptions()
        assert isinstance(exceptions[0], BackendCommitError)
        assert len(backend.commits) == 1
        assert exporter.tag_count == 0

    def test_unexpected_backend_error_wrapped(self, work_queue, project_source):
        def crash(count):
            raise RuntimeError("helper crashed")

        backend = CommitLimitBackend(crash)
        exporter = build_exporter(work_queue, project_source, backend)
        exporter.export()
        work_queue.wait_idle(5)

        exceptions = work_queue.fetch_exceptions()
        assert isinstance(exceptions[0], BackendCommitError)
        assert "Changeset 1" in str(exceptions[0])
        assert isinstance(exceptions[0].__cause__, RuntimeError)

    def test_missing_content_wrapped(self, work_queue, project_source):
        del project_source.contents["f1v2"]
        backend = MemoryBackend()
        exporter = build_exporter(work_queue, project_source, backend)
        exporter.export()
        work_queue.wait_idle(5)

        exceptions = work_queue.fetch_exceptions()
        assert isinstance(exceptions[0], BackendCommitError)
        assert "Changeset 2" in str(exceptions[0])
        assert len(backend.commits) == 1
