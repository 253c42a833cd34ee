#!/usr/bin/env python3
################################################################################
# KUBE-STASH
#
# @file:        __main__.py
# @module:      kube_stash.__main__
# @description: Typer-based CLI entry point orchestrating backup and restore.
# @author:      Kube-Stash Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - "Tool bench" pattern: config is loaded once in the callback and commands
#   take their tools from ctx.obj
# - backup exits 0 only if every target is Success
# - restore exits 0 only if every restored target reaches Done
################################################################################

"""
Kube-Stash main CLI.

Commands:
    backup      capture all (or selected) targets into a new run
    restore     stream a run back into the cluster
    list        show runs below the backup root
    targets     show the target registry
    new-config  write the default configuration
    version     print the version
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional

import typer

from .cores.archive_writer import ArchiveWriter
from .cores.backup_manager import BackupManager
from .cores.gateway import ClusterGateway, KubectlGateway
from .cores.registry import TargetRegistry
from .cores.restore_manager import RestoreManager
from .cores.run_catalog import list_runs, load_run
from .cores.safe_exit_manager import SafeExitManager
from .errors import ArchiveWriteError, ConfigError, KubeStashError, RunFormatError
from .helpers.config import StashConfig, create_default_config
from .helpers.constants import VERSION
from .helpers.logging import get_logger, log_manager
from .helpers.system_utils import SystemUtils
from .helpers.ui_utils import (
    console,
    create_table,
    format_bytes,
    print_error,
    print_header,
    print_info,
    print_success,
    print_warning,
    prompt_confirm,
)
from .types import CaptureState, RestoreState

app = typer.Typer(
    name="kube-stash",
    add_completion=False,
    help="Kube-Stash - backup & restore of application data in a Kubernetes cluster.",
)
logger = get_logger(__name__)

_STATE_STYLES = {
    CaptureState.SUCCESS: "green",
    CaptureState.PARTIAL_FAILURE: "red",
    CaptureState.SKIPPED: "yellow",
}


# -------------------------
# Application Context
# -------------------------

@app.callback()
def initialize_context(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file."
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)."
    ),
    log_file: Optional[Path] = typer.Option(
        None, "--log-file", help="Also log into this (rotated) file."
    ),
):
    """
    Initialize application context before any command runs.
    Loads configuration once and sets up logging.
    """
    ctx.ensure_object(dict)

    path = config_path or StashConfig.get_default_path()
    cfg = None
    config_error = None
    if path.exists():
        try:
            cfg = StashConfig.load(path)
        except ConfigError as e:
            config_error = str(e)

    level = log_level or (cfg.logging.level if cfg else "INFO")
    file = log_file or (cfg.logging.file if cfg else None)
    try:
        log_manager.configure(
            level=level,
            log_file=file,
            max_size_mb=cfg.logging.max_size_mb if cfg else 100,
            backup_count=cfg.logging.backup_count if cfg else 5,
        )
    except (ValueError, OSError) as e:
        print_error(f"Cannot set up logging: {e}")
        raise typer.Exit(code=1)

    ctx.obj["config"] = cfg
    ctx.obj["config_path"] = path
    ctx.obj["config_error"] = config_error


# -------------------------
# Helper Functions
# -------------------------

def get_config(ctx: typer.Context) -> Optional[StashConfig]:
    """Get config from the tool bench."""
    return ctx.obj.get("config")


def ensure_config(ctx: typer.Context) -> StashConfig:
    """Ensure a valid config exists or exit."""
    if ctx.obj.get("config_error"):
        print_error(ctx.obj["config_error"])
        raise typer.Exit(code=1)
    cfg = get_config(ctx)
    if not cfg:
        print_error(f"No configuration found at {ctx.obj.get('config_path')}")
        print_info("Run: kube-stash new-config")
        raise typer.Exit(code=1)
    return cfg


def make_gateway(cfg: StashConfig, cancel_event) -> ClusterGateway:
    """Build the cluster gateway for a command."""
    return KubectlGateway.from_config(cfg.cluster, cancel_event=cancel_event)


def get_gateway(ctx: typer.Context, cfg: StashConfig) -> ClusterGateway:
    """Get or create the gateway from the tool bench."""
    if "gateway" not in ctx.obj:
        if not SystemUtils.check_kubectl(cfg.cluster.kubectl):
            print_warning(f"{cfg.cluster.kubectl} not found on PATH; cluster calls will fail")
        ctx.obj["gateway"] = make_gateway(cfg, SafeExitManager.get_instance().cancel_event)
    return ctx.obj["gateway"]


def _status_cell(state, text: str) -> str:
    style = _STATE_STYLES.get(state, "white")
    return f"[{style}]{text}[/{style}]"


# -------------------------
# Commands
# -------------------------

@app.command()
def backup(
    ctx: typer.Context,
    target: Optional[List[str]] = typer.Option(
        None, "--target", "-t", help="Back up only this target (repeatable)."
    ),
):
    """Capture targets into a new timestamped run."""
    cfg = ensure_config(ctx)
    try:
        registry = TargetRegistry.from_config(cfg)
        registry.list_targets(target)
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(code=1)

    safe_exit = SafeExitManager.get_instance()
    manager = BackupManager(
        cfg,
        get_gateway(ctx, cfg),
        ArchiveWriter(cfg.backup.root),
        registry,
        cancel_event=safe_exit.cancel_event,
    )

    print_header("Kube-Stash Backup", f"Backup root: {cfg.backup.root}")
    try:
        run = manager.run(target)
    except (ArchiveWriteError, ConfigError) as e:
        print_error(f"Backup aborted: {e}")
        raise typer.Exit(code=1)

    table = create_table(
        f"Run {run.run_id}",
        [("Target", "cyan", None), ("Status", None, None), ("Size", None, None), ("Pod", "dim", None)],
    )
    for manifest in run.ordered_manifests():
        table.add_row(
            manifest.target_name,
            _status_cell(manifest.status.state, str(manifest.status)),
            format_bytes(manifest.data.size_bytes) if manifest.data else "-",
            manifest.pod or "-",
        )
    console.print(table)

    for name, error in run.artifact_errors.items():
        print_warning(f"Cluster artifact {name}: {error}")

    print_info(f"Run directory: {run.directory}")
    if run.cancelled:
        print_warning("Backup was cancelled")
    if not run.success or run.cancelled:
        print_error("Not every target was captured successfully")
        raise typer.Exit(code=1)
    print_success("All targets captured")


@app.command()
def restore(
    ctx: typer.Context,
    run_dir: Path = typer.Argument(..., help="Run directory to restore from."),
    target: Optional[List[str]] = typer.Option(
        None, "--target", "-t", help="Restore only this target (repeatable)."
    ),
    no_verify: bool = typer.Option(False, "--no-verify", help="Skip checksum verification."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Restore a run's data into the cluster (scales deployments down temporarily)."""
    if ctx.obj.get("config_error"):
        print_error(ctx.obj["config_error"])
        raise typer.Exit(code=1)
    cfg = get_config(ctx) or StashConfig()

    try:
        run = load_run(run_dir)
    except RunFormatError as e:
        print_error(f"Cannot load run: {e}")
        raise typer.Exit(code=1)

    restore_cfg = cfg.restore.model_copy(update={"verify": False}) if no_verify else cfg.restore
    safe_exit = SafeExitManager.get_instance()
    manager = RestoreManager(get_gateway(ctx, cfg), restore_cfg, cancel_event=safe_exit.cancel_event)

    try:
        plan = manager.build_plan(run, target)
    except KubeStashError as e:
        print_error(str(e))
        raise typer.Exit(code=1)

    print_header("Kube-Stash Restore", f"Run {plan.run_id} from {plan.run_directory}")
    overview = create_table(
        "Restore plan",
        [("Target", "cyan", None), ("Deployment", None, None), ("Archive", None, None), ("Size", None, None)],
    )
    for step in plan.steps:
        overview.add_row(
            step.target.name,
            f"{step.target.namespace}/{step.target.deployment_name}",
            step.archive_path.name if step.archive_path else "[yellow]none[/yellow]",
            format_bytes(step.size_bytes),
        )
    console.print(overview)
    for name, reason in plan.skipped.items():
        print_warning(f"Skipping {name}: {reason}")

    if not plan.steps:
        print_warning("Nothing to restore")
        return
    if not yes and not prompt_confirm(
        "Scale these deployments to 0 and restore their data?", default=False
    ):
        print_warning("Restore aborted by user")
        raise typer.Exit(code=1)

    results = manager.execute(plan)

    table = create_table(
        "Restore results",
        [("Target", "cyan", None), ("State", None, None), ("Replicas", None, None), ("Streamed", None, None)],
    )
    for result in results:
        style = "green" if result.done else "red"
        replicas = "-"
        if result.original_replicas is not None:
            replicas = f"{result.original_replicas} -> {result.final_replicas if result.final_replicas is not None else '?'}"
        table.add_row(
            result.target_name,
            f"[{style}]{result}[/{style}]",
            replicas,
            format_bytes(result.bytes_streamed) if result.bytes_streamed else "-",
        )
    console.print(table)

    for result in results:
        if result.left_scaled_down:
            print_warning(
                f"{result.target_name} is scaled to 0 (was {result.original_replicas}); "
                "fix the cause and re-run the restore"
            )

    if not all(r.state is RestoreState.DONE for r in results):
        print_error("Not every target was restored")
        raise typer.Exit(code=1)
    print_success("All targets restored")


@app.command("list")
def list_cmd(
    ctx: typer.Context,
    root: Optional[Path] = typer.Option(None, "--root", help="Backup root (default: from config)."),
):
    """List backup runs below the backup root."""
    cfg = get_config(ctx) or StashConfig()
    backup_root = root or cfg.backup.root
    entries = list_runs(backup_root)
    if not entries:
        print_warning(f"No runs found in {backup_root}")
        return

    table = create_table(
        f"Runs in {backup_root}",
        [("Run", "cyan", None), ("Result", None, None), ("Success", None, None),
         ("Partial", None, None), ("Skipped", None, None)],
    )
    for entry in entries:
        if not entry.sealed:
            table.add_row(entry.run_id, f"[yellow]{entry.error}[/yellow]", "-", "-", "-")
            continue
        counts = entry.summary.get("counts", {})
        ok = entry.summary.get("success")
        label = "[green]ok[/green]" if ok else ("[yellow]cancelled[/yellow]" if entry.summary.get("cancelled") else "[red]problems[/red]")
        table.add_row(
            entry.run_id,
            label,
            str(counts.get(CaptureState.SUCCESS.value, 0)),
            str(counts.get(CaptureState.PARTIAL_FAILURE.value, 0)),
            str(counts.get(CaptureState.SKIPPED.value, 0)),
        )
    console.print(table)


@app.command()
def targets(ctx: typer.Context):
    """Show the configured backup targets."""
    cfg = ensure_config(ctx)
    try:
        registry = TargetRegistry.from_config(cfg)
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(code=1)

    table = create_table(
        f"{len(registry)} targets",
        [("Name", "cyan", None), ("Namespace", None, None), ("Selector", None, None),
         ("Mount path", None, None), ("Archive", None, None)],
    )
    for t in registry.list_targets():
        table.add_row(t.name, t.namespace, t.pod_selector or "[dim](first pod)[/dim]", t.mount_path, t.archive_data_type)
    console.print(table)


@app.command("new-config")
def new_config(
    ctx: typer.Context,
    path: Optional[Path] = typer.Option(None, "--path", help="Where to write (default: --config or standard path)."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
):
    """Write a default configuration file."""
    destination = path or ctx.obj.get("config_path")
    if destination and destination.exists() and not force:
        print_warning(f"Config already exists at: {destination}")
        print_info("Use --force to overwrite it")
        raise typer.Exit(code=1)
    try:
        written = create_default_config(destination, force=force)
    except OSError as e:
        print_error(f"Cannot write config: {e}")
        raise typer.Exit(code=1)
    print_success(f"Configuration written to {written}")


@app.command()
def version():
    """Show version information."""
    console.print(f"[cyan]Kube-Stash[/cyan] v{VERSION}")


def cli_main():
    """
    Entry point for CLI

    Installs the SIGINT/SIGTERM handlers: the first signal cancels
    gracefully, a second one aborts.
    """
    safe_exit = SafeExitManager.get_instance()
    safe_exit.install_handlers()
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled by user[/yellow]")
        sys.exit(130)
    finally:
        safe_exit.restore_handlers()


if __name__ == "__main__":
    cli_main()
