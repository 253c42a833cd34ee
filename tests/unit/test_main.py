"""
Unit tests for main CLI entry point (__main__.py).

Commands run through the Typer CliRunner; the kubectl gateway is replaced
by the in-memory FakeGateway via make_gateway.
"""
import json

import pytest
from unittest.mock import patch

from kube_stash.__main__ import app
from kube_stash.cores.archive_writer import ArchiveWriter
from kube_stash.cores.backup_manager import BackupManager
from kube_stash.cores.registry import TargetRegistry


@pytest.fixture
def use_gateway():
    """Patch make_gateway to hand out the given fake gateway."""
    patchers = []

    def _use(gateway):
        patcher = patch("kube_stash.__main__.make_gateway", return_value=gateway)
        patchers.append(patcher)
        return patcher.start()

    yield _use
    for patcher in patchers:
        patcher.stop()


@pytest.fixture
def sealed_run_dir(stash_config, scenario_gateway):
    manager = BackupManager(
        stash_config,
        scenario_gateway,
        ArchiveWriter(stash_config.backup.root),
        TargetRegistry.from_config(stash_config),
    )
    run = manager.run()
    scenario_gateway.calls.clear()
    scenario_gateway.scale_calls.clear()
    return run.directory


@pytest.mark.unit
class TestVersionCommand:

    def test_version(self, cli_runner):
        result = cli_runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert result.stdout.strip().startswith("Kube-Stash")
        assert "1.0.0" in result.stdout


@pytest.mark.unit
class TestConfigCommands:

    def test_new_config_writes_file(self, cli_runner, tmp_path):
        path = tmp_path / "cfg" / "config.json"

        result = cli_runner.invoke(app, ["--config", str(path), "new-config"])

        assert result.exit_code == 0
        assert path.exists()
        assert json.loads(path.read_text())["targets"]

    def test_new_config_refuses_overwrite(self, cli_runner, config_file):
        before = config_file.read_text()

        result = cli_runner.invoke(app, ["--config", str(config_file), "new-config"])

        assert result.exit_code == 1
        assert "already exists" in result.output
        assert config_file.read_text() == before

    def test_new_config_force(self, cli_runner, config_file):
        result = cli_runner.invoke(app, ["--config", str(config_file), "new-config", "--force"])
        assert result.exit_code == 0

    def test_targets_table(self, cli_runner, config_file):
        result = cli_runner.invoke(app, ["--config", str(config_file), "targets"])

        assert result.exit_code == 0
        for name in ("alpha", "beta", "gamma"):
            assert name in result.output

    def test_missing_config(self, cli_runner, tmp_path):
        result = cli_runner.invoke(app, ["--config", str(tmp_path / "none.json"), "targets"])

        assert result.exit_code == 1
        assert "kube-stash new-config" in result.output

    def test_broken_config(self, cli_runner, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")

        result = cli_runner.invoke(app, ["--config", str(path), "backup"])

        assert result.exit_code == 1


@pytest.mark.unit
class TestBackupCommand:

    def test_mixed_results_exit_nonzero(self, cli_runner, config_file, scenario_gateway, use_gateway):
        use_gateway(scenario_gateway)

        result = cli_runner.invoke(app, ["--config", str(config_file), "backup"])

        assert result.exit_code == 1
        for name in ("alpha", "beta", "gamma"):
            assert name in result.output
        assert "Success" in result.output
        assert "Skipped" in result.output

    def test_all_success_exits_zero(self, cli_runner, config_file, scenario_gateway, use_gateway, stash_config):
        use_gateway(scenario_gateway)

        result = cli_runner.invoke(app, ["--config", str(config_file), "backup", "-t", "alpha"])

        assert result.exit_code == 0
        runs = [p for p in stash_config.backup.root.iterdir() if p.is_dir()]
        assert len(runs) == 1
        assert (runs[0] / "summary.json").exists()

    def test_unknown_target(self, cli_runner, config_file, scenario_gateway, use_gateway):
        use_gateway(scenario_gateway)

        result = cli_runner.invoke(app, ["--config", str(config_file), "backup", "-t", "delta"])

        assert result.exit_code == 1
        assert "delta" in result.output
        assert scenario_gateway.calls == []


@pytest.mark.unit
class TestRestoreCommand:

    def test_restore_alpha(self, cli_runner, config_file, scenario_gateway, use_gateway, sealed_run_dir):
        use_gateway(scenario_gateway)

        result = cli_runner.invoke(
            app, ["--config", str(config_file), "restore", str(sealed_run_dir), "-t", "alpha", "--yes"]
        )

        assert result.exit_code == 0
        assert "All targets restored" in result.output
        assert scenario_gateway.replicas("alpha", "alpha") == 2

    def test_restore_declined(self, cli_runner, config_file, scenario_gateway, use_gateway, sealed_run_dir):
        use_gateway(scenario_gateway)

        with patch("kube_stash.__main__.prompt_confirm", return_value=False):
            result = cli_runner.invoke(
                app, ["--config", str(config_file), "restore", str(sealed_run_dir), "-t", "alpha"]
            )

        assert result.exit_code == 1
        assert scenario_gateway.scale_calls == []

    def test_restore_failure_exits_nonzero(self, cli_runner, config_file, scenario_gateway, use_gateway, sealed_run_dir):
        use_gateway(scenario_gateway)

        result = cli_runner.invoke(
            app, ["--config", str(config_file), "restore", str(sealed_run_dir), "-t", "beta", "--yes"]
        )

        assert result.exit_code == 1

    def test_whole_run_skips_targets_without_archive(
        self, cli_runner, config_file, scenario_gateway, use_gateway, sealed_run_dir
    ):
        use_gateway(scenario_gateway)

        result = cli_runner.invoke(app, ["--config", str(config_file), "restore", str(sealed_run_dir), "--yes"])

        assert result.exit_code == 0
        assert "Skipping beta" in result.output
        assert "Skipping gamma" in result.output
        assert scenario_gateway.replicas("alpha", "alpha") == 2

    def test_not_a_run(self, cli_runner, config_file, tmp_path):
        result = cli_runner.invoke(app, ["--config", str(config_file), "restore", str(tmp_path), "--yes"])

        assert result.exit_code == 1
        assert "Cannot load run" in result.output


@pytest.mark.unit
class TestListCommand:

    def test_lists_runs(self, cli_runner, config_file, sealed_run_dir):
        result = cli_runner.invoke(app, ["--config", str(config_file), "list"])

        assert result.exit_code == 0
        assert sealed_run_dir.name in result.output

    def test_empty_root(self, cli_runner, config_file, tmp_path):
        result = cli_runner.invoke(app, ["--config", str(config_file), "list", "--root", str(tmp_path / "empty")])

        assert result.exit_code == 0
        assert "No runs found" in result.output
