"""Tests for the backup orchestrator and its steps."""

from __future__ import annotations

import tarfile
import threading
from pathlib import Path

import pytest

from ocireplica.core import backup as backup_module
from ocireplica.core.backup import (
    BACKUP_USAGE,
    BackupOrchestrator,
    BackupRequest,
    OutputFormat,
    directory_size,
    export_tar,
    find_tags_to_backup,
)
from ocireplica.core.errors import BackupError, CopyCancelledError, InvalidReferenceError, ReplicaError
from ocireplica.core.layout import INGEST_DIR, OCILayoutArchive, OCILayoutStore
from ocireplica.core.memory import MemoryStore
from ocireplica.monitor.tracker import RecordingMetadata, RecordingTracker

REPOSITORY = "localhost:5000/team/app"


class SourceFactory:
    """Hands out one prepared store and remembers what it was asked for."""

    def __init__(self, store) -> None:
        self.store = store
        self.requested: list[str] = []

    def __call__(self, repository: str):
        self.requested.append(repository)
        return self.store


@pytest.fixture
def factory(source_store) -> SourceFactory:
    return SourceFactory(source_store)


@pytest.fixture
def staging_parent(tmp_path: Path) -> Path:
    parent = tmp_path / "staging"
    parent.mkdir()
    return parent


class TestBackupRequest:
    @pytest.mark.parametrize(
        "name,expected",
        [("out.tar", OutputFormat.TAR), ("OUT.TAR", OutputFormat.DIRECTORY), ("out", OutputFormat.DIRECTORY),
         ("out.tar.gz", OutputFormat.DIRECTORY)],
    )
    def test_output_format_from_suffix(self, tmp_path, name, expected):
        assert BackupRequest(reference=REPOSITORY, output=tmp_path / name).output_format is expected


class TestFindTags:
    def test_explicit_tags_win(self, source_store):
        assert find_tags_to_backup(source_store, ["b", "a"]) == ["b", "a"]

    def test_lists_source_tags(self, source_store, artifact_graph):
        source_store.tag(artifact_graph.bbb[0], "amd")
        assert find_tags_to_backup(source_store, []) == ["amd", "v1"]

    def test_source_without_listing(self):
        class Opaque:
            pass

        with pytest.raises(ReplicaError, match="listing tags"):
            find_tags_to_backup(Opaque(), [])


class TestDirectoryBackup:
    def test_backs_up_explicit_tag(self, tmp_path, factory, artifact_graph):
        metadata = RecordingMetadata()
        output = tmp_path / "backup"
        result = BackupOrchestrator(factory, metadata=metadata).run(
            BackupRequest(reference=f"{REPOSITORY}:v1", output=output)
        )
        assert factory.requested == [REPOSITORY]
        assert result.tags == ["v1"]
        assert result.referrer_counts == [0]
        assert result.digests == [artifact_graph.root.digest]
        assert result.output_format is OutputFormat.DIRECTORY
        assert result.size == directory_size(output) > 0
        assert OCILayoutStore(output).resolve("v1") == artifact_graph.root
        assert not (output / INGEST_DIR).exists()
        assert metadata.names() == ["on_tags_found", "on_artifact_pulled", "on_backup_completed"]

    def test_discovers_all_tags(self, tmp_path, factory, source_store, artifact_graph):
        source_store.tag(artifact_graph.ccc[0], "arm")
        result = BackupOrchestrator(factory).run(BackupRequest(reference=REPOSITORY, output=tmp_path / "out"))
        assert result.tags == ["arm", "v1"]
        store = OCILayoutStore(tmp_path / "out")
        assert store.tags() == ["arm", "v1"]

    def test_include_referrers_counts_closure(self, tmp_path, factory, artifact_graph):
        output = tmp_path / "out"
        result = BackupOrchestrator(factory).run(
            BackupRequest(reference=f"{REPOSITORY}:v1", output=output, include_referrers=True)
        )
        assert result.referrer_counts == [1]
        store = OCILayoutStore(output)
        assert store.exists(artifact_graph.referrer)

    def test_include_referrers_with_root_referrer(self, tmp_path, make_graph):
        graph = make_graph(with_root_referrer=True)
        factory = SourceFactory(graph.populate(MemoryStore()))
        result = BackupOrchestrator(factory).run(
            BackupRequest(reference=f"{REPOSITORY}:v1", output=tmp_path / "out", include_referrers=True)
        )
        assert result.referrer_counts == [2]

    def test_one_scope_per_tag(self, tmp_path, factory, source_store, artifact_graph):
        source_store.tag(artifact_graph.root, "v2")
        tracker = RecordingTracker()
        BackupOrchestrator(factory, tracker).run(
            BackupRequest(reference=f"{REPOSITORY}:v1,v2", output=tmp_path / "out")
        )
        assert tracker.scopes == 2
        assert tracker.open_scopes == 0

    def test_failure_keeps_earlier_tags(self, tmp_path, factory, artifact_graph):
        output = tmp_path / "out"
        with pytest.raises(BackupError, match="failed to copy ref missing: missing: not found"):
            BackupOrchestrator(factory).run(BackupRequest(reference=f"{REPOSITORY}:v1,missing", output=output))
        assert OCILayoutStore(output).resolve("v1") == artifact_graph.root


class TestTarBackup:
    def test_round_trip(self, tmp_path, factory, source_store, artifact_graph, staging_parent):
        source_store.tag(artifact_graph.root, "v2")
        metadata = RecordingMetadata()
        output = tmp_path / "exports" / "backup.tar"
        result = BackupOrchestrator(factory, metadata=metadata, temp_dir=staging_parent).run(
            BackupRequest(reference=f"{REPOSITORY}:v1,v2", output=output)
        )
        assert result.output_format is OutputFormat.TAR
        assert result.size == output.stat().st_size
        with OCILayoutArchive(output) as archive:
            assert archive.tags() == ["v1", "v2"]
            assert archive.resolve("v1") == archive.resolve("v2") == artifact_graph.root
        assert list(staging_parent.iterdir()) == []
        assert [p.name for p in output.parent.iterdir()] == ["backup.tar"]
        assert metadata.names() == [
            "on_tags_found",
            "on_artifact_pulled",
            "on_artifact_pulled",
            "on_tar_exporting",
            "on_tar_exported",
            "on_backup_completed",
        ]

    def test_failure_writes_nothing_and_cleans_staging(self, tmp_path, factory, staging_parent):
        output = tmp_path / "backup.tar"
        with pytest.raises(BackupError):
            BackupOrchestrator(factory, temp_dir=staging_parent).run(
                BackupRequest(reference=f"{REPOSITORY}:missing", output=output)
            )
        assert not output.exists()
        assert list(staging_parent.iterdir()) == []

    def test_unwritable_output_directory(self, tmp_path):
        staging = tmp_path / "staging"
        staging.mkdir()
        (staging / "file").write_text("x")
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(BackupError, match="failed to create directory for output file"):
            export_tar(staging, blocker / "out.tar")

    def test_failed_move_removes_temporary_archive(self, tmp_path):
        staging = tmp_path / "staging"
        staging.mkdir()
        (staging / "file").write_text("x")
        exports = tmp_path / "exports"
        (exports / "busy.tar").mkdir(parents=True)
        with pytest.raises(BackupError, match="failed to create tar archive"):
            export_tar(staging, exports / "busy.tar")
        assert [p.name for p in exports.iterdir()] == ["busy.tar"]
        assert (exports / "busy.tar").is_dir()

    def test_tar_error_is_backup_error(self, tmp_path, monkeypatch):
        staging = tmp_path / "staging"
        staging.mkdir()

        def broken_tar(fileobj, root, *, cancel_event=None):
            raise tarfile.TarError("header too long")

        monkeypatch.setattr(backup_module, "tar_directory", broken_tar)
        exports = tmp_path / "exports"
        with pytest.raises(BackupError, match="header too long"):
            export_tar(staging, exports / "out.tar")
        assert list(exports.iterdir()) == []


class TestBackupErrors:
    def test_zero_tags_is_usage_error(self, tmp_path, staging_parent):
        factory = SourceFactory(MemoryStore())
        with pytest.raises(ReplicaError) as exc_info:
            BackupOrchestrator(factory, temp_dir=staging_parent).run(
                BackupRequest(reference=REPOSITORY, output=tmp_path / "out.tar")
            )
        err = exc_info.value
        assert not isinstance(err, BackupError)
        assert err.usage == BACKUP_USAGE
        assert "ocireplica tags" in err.recommendation
        assert list(staging_parent.iterdir()) == []

    def test_bad_reference_opens_nothing(self, tmp_path, factory):
        reference = f"{REPOSITORY}@sha256:" + "a" * 64
        with pytest.raises(InvalidReferenceError):
            BackupOrchestrator(factory).run(BackupRequest(reference=reference, output=tmp_path / "out"))
        assert factory.requested == []

    def test_cancellation_is_not_wrapped(self, tmp_path, factory):
        event = threading.Event()
        event.set()
        with pytest.raises(CopyCancelledError):
            BackupOrchestrator(factory, cancel_event=event).run(
                BackupRequest(reference=f"{REPOSITORY}:v1", output=tmp_path / "out")
            )
