"""Unit tests for reading sealed runs back from disk."""

import json

import pytest

from kube_stash.cores.archive_writer import ArchiveWriter
from kube_stash.cores.backup_manager import BackupManager
from kube_stash.cores.registry import TargetRegistry
from kube_stash.cores.run_catalog import list_runs, load_run, read_summary
from kube_stash.errors import RunFormatError, RunSealedError
from kube_stash.types import CaptureState


@pytest.fixture
def sealed_run(stash_config, scenario_gateway):
    manager = BackupManager(
        stash_config,
        scenario_gateway,
        ArchiveWriter(stash_config.backup.root),
        TargetRegistry.from_config(stash_config),
    )
    return manager.run()


@pytest.mark.unit
class TestLoadRun:

    def test_round_trip(self, sealed_run):
        loaded = load_run(sealed_run.directory)

        assert loaded.run_id == sealed_run.run_id
        assert loaded.sealed
        assert loaded.target_order == ["alpha", "beta", "gamma"]
        alpha = loaded.manifest_for("alpha")
        assert alpha.status.state is CaptureState.SUCCESS
        assert alpha.data == sealed_run.manifest_for("alpha").data
        assert alpha.target.mount_path == "/data"
        assert str(loaded.manifest_for("beta").status) == 'Skipped("no pod found")'

    def test_loaded_run_is_sealed_for_writes(self, sealed_run, tmp_path):
        loaded = load_run(sealed_run.directory)
        with pytest.raises(RunSealedError):
            ArchiveWriter(tmp_path).write_artifact(loaded, "x", b"")

    def test_not_a_directory(self, tmp_path):
        with pytest.raises(RunFormatError, match="not a directory"):
            load_run(tmp_path / "missing")

    def test_unsealed_run(self, tmp_path):
        run = ArchiveWriter(tmp_path).open_run()
        with pytest.raises(RunFormatError, match="missing"):
            load_run(run.directory)

    def test_corrupt_summary(self, sealed_run):
        (sealed_run.directory / "summary.json").write_text("{")
        with pytest.raises(RunFormatError, match="unreadable"):
            load_run(sealed_run.directory)

    def test_schema_violation(self, sealed_run):
        path = sealed_run.directory / "summary.json"
        summary = json.loads(path.read_text())
        summary["targets"][0]["status"]["state"] = "Exploded"
        path.write_text(json.dumps(summary))
        with pytest.raises(RunFormatError, match="targets/0/status/state"):
            load_run(sealed_run.directory)

    def test_newer_format_rejected(self, sealed_run):
        path = sealed_run.directory / "summary.json"
        summary = json.loads(path.read_text())
        summary["format_version"] = 99
        path.write_text(json.dumps(summary))
        with pytest.raises(RunFormatError, match="newer"):
            read_summary(sealed_run.directory)

    def test_missing_manifest(self, sealed_run):
        (sealed_run.directory / "gamma.manifest.json").unlink()
        with pytest.raises(RunFormatError, match="gamma.manifest.json"):
            load_run(sealed_run.directory)


@pytest.mark.unit
class TestListRuns:

    def test_lists_sealed_and_unsealed(self, stash_config, sealed_run):
        writer = ArchiveWriter(stash_config.backup.root)
        unsealed = writer.open_run()

        entries = {e.run_id: e for e in list_runs(stash_config.backup.root)}

        assert entries[sealed_run.run_id].sealed
        assert entries[sealed_run.run_id].summary["counts"]["Success"] == 1
        assert not entries[unsealed.run_id].sealed
        assert entries[unsealed.run_id].error == "not sealed"

    def test_missing_root(self, tmp_path):
        assert list_runs(tmp_path / "nothing") == []
