"""
Unit tests for ArchiveWriter.

Covers run directory creation, atomic writes (no *.tmp leakage),
checksum files, summary.json and sealing.
"""

import hashlib
import json
import os
from datetime import datetime

import pytest
from unittest.mock import patch

from kube_stash.cores.archive_writer import ArchiveWriter, data_file_name, sha256_file
from kube_stash.cores.safe_exit_manager import SafeExitManager
from kube_stash.errors import ArchiveWriteError, RunSealedError
from kube_stash.types import CaptureStatus, ResourceCapture, SnapshotManifest


@pytest.fixture
def writer(tmp_path):
    return ArchiveWriter(tmp_path / "backups")


@pytest.fixture
def run(writer):
    return writer.open_run(now=datetime(2025, 3, 1, 12, 30, 0))


def _tmp_files(directory):
    return [p for p in directory.rglob("*.tmp")]


@pytest.mark.unit
class TestOpenRun:

    def test_directory_named_by_timestamp(self, writer, run):
        assert run.run_id == "20250301-123000"
        assert run.directory.is_dir()
        assert run.directory.parent == writer.root

    def test_collision_gets_suffix(self, writer, run):
        second = writer.open_run(now=datetime(2025, 3, 1, 12, 30, 0))
        assert second.run_id == "20250301-123000-1"
        assert second.directory != run.directory

    def test_unwritable_root_is_fatal(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        writer = ArchiveWriter(blocker / "backups")
        with pytest.raises(ArchiveWriteError):
            writer.open_run()

    def test_archive_write_error_is_oserror(self):
        assert issubclass(ArchiveWriteError, OSError)


@pytest.mark.unit
class TestDataStream:

    def test_commit_publishes_and_hashes(self, writer, run, target_factory):
        target = target_factory("alpha")
        payload = b"x" * 5000
        with writer.open_data_stream(run, target) as stream:
            stream.write(payload[:1000])
            stream.write(payload[1000:])
            info = stream.commit()

        path = run.directory / data_file_name(target)
        assert path.read_bytes() == payload
        assert info.size_bytes == 5000
        assert info.sha256 == hashlib.sha256(payload).hexdigest()
        assert info.sha256 == sha256_file(path)
        assert _tmp_files(run.directory) == []

    def test_discard_leaves_nothing(self, writer, run, target_factory):
        target = target_factory("alpha")
        with writer.open_data_stream(run, target) as stream:
            stream.write(b"partial")
            stream.discard()
        assert not (run.directory / data_file_name(target)).exists()
        assert _tmp_files(run.directory) == []

    def test_exception_mid_stream_removes_temp(self, writer, run, target_factory):
        """Interrupted stream: neither a final file nor a temp file survives."""
        target = target_factory("alpha")
        with pytest.raises(KeyboardInterrupt):
            with writer.open_data_stream(run, target) as stream:
                stream.write(b"half of the data")
                raise KeyboardInterrupt()
        assert list(run.directory.iterdir()) == []

    def test_uncommitted_stream_is_discarded(self, writer, run, target_factory):
        with writer.open_data_stream(run, target_factory("alpha")) as stream:
            stream.write(b"forgotten")
        assert list(run.directory.iterdir()) == []

    def test_plain_tar_extension(self, target_factory):
        assert data_file_name(target_factory("a", archive_data_type="tar")) == "a-data.tar"


@pytest.mark.unit
class TestManifests:

    def _manifest(self, writer, run, target, status=None):
        with writer.open_data_stream(run, target) as stream:
            stream.write(b"data")
            info = stream.commit()
        resource_file = writer.write_resource(run, target.name, "deployment", b"kind: Deployment\n")
        return SnapshotManifest(
            target_name=target.name,
            captured_at=datetime(2025, 3, 1, 12, 30, 5),
            status=status or CaptureStatus.success(),
            declarative_resources=(
                ResourceCapture("deployment", CaptureStatus.success(), b"kind: Deployment\n", resource_file),
                ResourceCapture("pvc", CaptureStatus.skipped("forbidden")),
            ),
            data=info,
            target=target,
            pod="alpha/alpha-0",
        )

    def test_manifest_and_checksum_file(self, writer, run, target_factory):
        target = target_factory("alpha")
        manifest = self._manifest(writer, run, target)
        writer.write_manifest(run, manifest)

        stored = json.loads((run.directory / "alpha.manifest.json").read_text())
        assert stored["status"] == {"state": "Success", "reason": None}
        assert stored["data"]["sha256"] == manifest.data.sha256
        assert stored["data_archive_present"] is True
        assert stored["resources"][1] == {"kind": "pvc", "file": None, "state": "Skipped", "reason": "forbidden"}

        lines = (run.directory / "alpha.sha256").read_text().splitlines()
        assert lines[0] == f"{manifest.data.sha256}  alpha-data.tar.gz"
        assert lines[1].endswith("  alpha-deployment.yaml")

    def test_rewrite_replaces_entry(self, writer, run, target_factory):
        target = target_factory("alpha")
        writer.write_manifest(run, self._manifest(writer, run, target, CaptureStatus.partial_failure("exit 1")))
        writer.write_manifest(run, self._manifest(writer, run, target))
        assert len(run.manifests) == 1
        assert run.manifests[0].status.ok


@pytest.mark.unit
class TestFinalize:

    def test_summary_lists_every_target(self, writer, run, target_factory):
        run.target_order = ["alpha", "beta"]
        writer.write_manifest(run, SnapshotManifest(
            target_name="beta", captured_at=datetime.now(), status=CaptureStatus.skipped("no pod found"),
        ))
        with writer.open_data_stream(run, target_factory("alpha")) as stream:
            stream.write(b"abc")
            info = stream.commit()
        writer.write_manifest(run, SnapshotManifest(
            target_name="alpha", captured_at=datetime.now(), status=CaptureStatus.success(), data=info,
        ))
        writer.write_artifact(run, "nodes.yaml", b"kind: List\n")
        writer.record_artifact_error(run, "node-resources.txt", "not_found: metrics")

        summary = writer.finalize(run)

        on_disk = json.loads((run.directory / "summary.json").read_text())
        assert on_disk == summary
        assert [t["name"] for t in summary["targets"]] == ["alpha", "beta"]
        assert summary["targets"][0]["size_bytes"] == 3
        assert summary["targets"][1]["status"] == {"state": "Skipped", "reason": "no pod found"}
        assert summary["counts"] == {"Success": 1, "PartialFailure": 0, "Skipped": 1}
        assert summary["success"] is False
        assert summary["cluster_artifacts"] == {"nodes.yaml": "cluster/nodes.yaml"}
        assert (run.directory / "cluster" / "nodes.yaml").exists()
        assert summary["artifact_errors"]["node-resources.txt"] == "not_found: metrics"

    def test_finalize_sweeps_stray_temp_files(self, writer, run):
        (run.directory / ".alpha-data.tar.gz.abc.tmp").write_bytes(b"leftover")
        writer.finalize(run)
        assert _tmp_files(run.directory) == []

    def test_sealed_run_rejects_mutation(self, writer, run, target_factory):
        writer.finalize(run)
        assert run.sealed
        with pytest.raises(RunSealedError):
            writer.write_resource(run, "alpha", "pvc", b"x")
        with pytest.raises(RunSealedError):
            writer.write_manifest(run, SnapshotManifest("alpha", datetime.now(), CaptureStatus.success()))
        with pytest.raises(RunSealedError):
            with writer.open_data_stream(run, target_factory("alpha")):
                pass
        with pytest.raises(RunSealedError):
            writer.finalize(run)

    def test_cancelled_run_is_not_success(self, writer, run):
        summary = writer.finalize(run, cancelled=True)
        assert summary["cancelled"] is True
        assert summary["success"] is False

    def test_temp_file_handler_only_while_runs_are_open(self, writer, run):
        safe_exit = SafeExitManager.get_instance()
        second = writer.open_run()
        assert [h for h, _ in safe_exit._handlers] == [writer._temp_handler]

        writer.finalize(run)
        assert [h for h, _ in safe_exit._handlers] == [writer._temp_handler]

        writer.release(second)
        assert safe_exit._handlers == []

    def test_failed_replace_keeps_no_partial_file(self, writer, run):
        with patch("kube_stash.cores.archive_writer.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(ArchiveWriteError):
                writer.write_resource(run, "alpha", "deployment", b"kind: Deployment\n")
        assert list(run.directory.iterdir()) == []
