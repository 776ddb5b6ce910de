"""Tests for vss_migrate.pipeline module."""

import json
import threading
import pytest
from unittest.mock import Mock

from conftest import CommitLimitBackend, at

from vss_migrate.backends.memory import MemoryBackend
from vss_migrate.config import MigrationSettings
from vss_migrate.errors import BackendCommitError
from vss_migrate.models import RunState
from vss_migrate.pipeline import MigrationPipeline
from vss_migrate.properties import read_properties
from vss_migrate.source import MemorySource, SourceContainer, SourceLeaf


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Keep emails.properties lookups inside the test directory."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def make_pipeline():
    """Factory for pipelines that are closed after the test."""
    pipelines = []

    def factory(source=None, backend=None, dry_run=False, **settings):
        settings.setdefault("vss_project", "$/Proj")
        pipeline = MigrationPipeline(MigrationSettings(**settings), source, backend, dry_run)
        pipelines.append(pipeline)
        return pipeline

    yield factory
    for pipeline in pipelines:
        pipeline.close()


def run_to_end(pipeline):
    result = pipeline.start()
    assert result.ok, result.message
    assert pipeline.wait(10)
    return pipeline.status()


class TestStart:
    """Validation done before anything is queued."""

    def test_status_idle_before_start(self, make_pipeline, project_source):
        pipeline = make_pipeline(project_source, MemoryBackend())
        assert pipeline.status().state == RunState.IDLE

    def test_missing_project(self, make_pipeline, project_source):
        result = make_pipeline(project_source, MemoryBackend(), vss_project="$/Missing").start()

        assert result.ok is False
        assert result.error_kind == "InvalidPathError"
        assert "$/Missing" in result.message

    def test_project_is_a_file(self, make_pipeline, project_source):
        result = make_pipeline(project_source, MemoryBackend(), vss_project="$/Proj/a.txt").start()

        assert result.ok is False
        assert result.error_kind == "NotAContainerError"

    def test_no_output_directory(self, make_pipeline, project_source):
        pipeline = make_pipeline(project_source)
        result = pipeline.start()

        assert result.ok is False
        assert "No output directory" in result.message
        assert pipeline.status().state == RunState.IDLE

    def test_unreadable_source_directory(self, make_pipeline, tmp_path):
        result = make_pipeline(vss_directory=str(tmp_path / "nothing"), dry_run=True).start()

        assert result.ok is False
        assert result.error_kind == "SourceUnreachableError"

    def test_already_running(self, make_pipeline, project_source):
        pipeline = make_pipeline(project_source, MemoryBackend())
        started, release = threading.Event(), threading.Event()

        pipeline.work_queue.submit(lambda q: (started.set(), release.wait(5)))
        assert started.wait(5)
        try:
            result = pipeline.start()
            assert result.ok is False
            assert "already running" in result.message
        finally:
            release.set()
        assert pipeline.wait(5)


class TestRun:
    """Full runs against the memory backend."""

    def test_completed_run(self, make_pipeline, project_source):
        backend = MemoryBackend()
        status = run_to_end(make_pipeline(project_source, backend))

        assert status.state == RunState.COMPLETED
        assert status.project_count == 1
        assert status.file_count == 2
        assert status.revision_count == 5
        assert status.changeset_count == 3
        assert status.commit_count == 2
        assert status.tag_count == 1
        assert status.errors == []
        assert [c.message for c in backend.commits] == ["initial", "fix"]

    def test_dry_run_creates_memory_backend(self, make_pipeline, project_source):
        pipeline = make_pipeline(project_source, dry_run=True)
        status = run_to_end(pipeline)

        assert status.state == RunState.COMPLETED
        assert isinstance(pipeline.backend, MemoryBackend)
        assert len(pipeline.backend.commits) == 2

    def test_email_domain_applied(self, make_pipeline, project_source):
        backend = MemoryBackend()
        run_to_end(make_pipeline(project_source, backend, default_email_domain="example.com"))
        assert backend.commits[1].author.email == "bob@example.com"

    def test_untranscoded_comments_keep_source_encoding(self, make_pipeline):
        root = SourceContainer("root", "$")
        proj = root.add(SourceContainer("p1", "Proj"))
        proj.add(SourceLeaf("f1", "a.txt", [
            {"version": 1, "timestamp": at(0), "user": "alice", "action": "Added",
             "comment": b"caf\xe9", "content_ref": "c1"},
        ]))
        source = MemorySource(root, {"c1": b"x"}, encoding="cp1252")

        backend = MemoryBackend()
        run_to_end(make_pipeline(source, backend, transcode_comments=False))

        commit = backend.commits[0]
        assert commit.encoding == "cp1252"
        assert commit.message.encode(commit.encoding) == b"caf\xe9"

    def test_transcoded_comments_are_utf8(self, make_pipeline, project_source):
        backend = MemoryBackend()
        run_to_end(make_pipeline(project_source, backend))
        assert {c.encoding for c in backend.commits} == {"utf-8"}

    def test_vss_encoding_used_to_read_dump(self, make_pipeline, tmp_path):
        dump = tmp_path / "vss"
        dump.mkdir()
        (dump / "history.json").write_text(json.dumps({
            "encoding": "utf-8",
            "root": {"key": "root", "name": "$", "container": True},
            "contents": {"c1": "café\n"},
        }))

        pipeline = make_pipeline(vss_directory=str(dump), vss_encoding="1252", dry_run=True)
        source = pipeline._open_source()

        assert source.encoding == "cp1252"
        assert source.contents["c1"] == b"caf\xe9\n"

    def test_cancel_after_three_commits(self, make_pipeline, five_changeset_source):
        """Aborting after the third commit leaves exactly three commits."""
        backend = CommitLimitBackend()
        pipeline = make_pipeline(five_changeset_source, backend)
        backend.on_commit = lambda count: pipeline.abort() if count == 3 else None

        status = run_to_end(pipeline)

        assert status.state == RunState.CANCELLED
        assert len(backend.commits) == 3
        assert backend.get_last_commit() == at(minutes=120)

    def test_backend_failure(self, make_pipeline, project_source):
        def fail(count):
            raise BackendCommitError("disk full")

        status = run_to_end(make_pipeline(project_source, CommitLimitBackend(fail)))

        assert status.state == RunState.FAILED
        assert any("disk full" in error for error in status.errors)

    def test_errors_kept_across_status_calls(self, make_pipeline, project_source):
        def fail(count):
            raise BackendCommitError("disk full")

        pipeline = make_pipeline(project_source, CommitLimitBackend(fail))
        run_to_end(pipeline)

        assert pipeline.status().state == RunState.FAILED
        assert len(pipeline.status().errors) == 1

    def test_continue_sync_resumes_after_last_commit(self, make_pipeline, project_source):
        backend = MemoryBackend()
        run_to_end(make_pipeline(project_source, backend))

        status = run_to_end(make_pipeline(project_source, backend, continue_sync=True))

        assert status.state == RunState.COMPLETED
        assert status.continue_after == at(minutes=20)
        assert status.skipped_count == 2
        assert status.commit_count == 0
        assert len(backend.commits) == 2

    def test_reset_ignores_continue_sync(self, make_pipeline, project_source):
        backend = MemoryBackend()
        run_to_end(make_pipeline(project_source, backend))

        status = run_to_end(make_pipeline(project_source, backend, continue_sync=True, reset_repo=True))

        assert status.continue_after is None
        assert status.commit_count == 2
        assert len(backend.commits) == 2

    def test_probe_failure_prevents_start(self, make_pipeline, project_source):
        backend = Mock()
        backend.get_last_commit.side_effect = BackendCommitError("unreachable")

        pipeline = make_pipeline(project_source, backend, continue_sync=True)
        result = pipeline.start()

        assert result.ok is False
        assert "Cannot probe target" in result.message
        backend.commit.assert_not_called()


class TestProbe:
    """Resume cursor probing."""

    def test_empty_target(self, make_pipeline, project_source):
        assert make_pipeline(project_source, MemoryBackend()).probe_resume_cursor(5) is None

    def test_existing_history(self, make_pipeline, project_source):
        backend = MemoryBackend()
        run_to_end(make_pipeline(project_source, backend))
        assert make_pipeline(project_source, backend).probe_resume_cursor(5) == at(minutes=20)


class TestDumpUsers:
    """Writing the author mapping file."""

    def test_dump_users_merges_with_existing(self, make_pipeline, project_source, isolated_cwd):
        mapping_file = isolated_cwd / "emails.properties"
        mapping_file.write_text("alice=Alice <alice@example.com>\n")

        pipeline = make_pipeline(project_source)
        result = pipeline.dump_users()
        assert result.ok
        assert pipeline.wait(10)

        assert pipeline.status().state == RunState.COMPLETED
        assert read_properties(mapping_file) == {
            "alice": "Alice <alice@example.com>",
            "bob": "",
        }

    def test_dump_users_to_output(self, make_pipeline, project_source, tmp_path):
        output = tmp_path / "out" / "users.properties"
        pipeline = make_pipeline(project_source)
        assert pipeline.dump_users(output).ok
        assert pipeline.wait(10)

        assert read_properties(output) == {"alice": "", "bob": ""}

    def test_dump_users_missing_project(self, make_pipeline, project_source):
        result = make_pipeline(project_source, vss_project="$/Nope").dump_users()
        assert result.ok is False
