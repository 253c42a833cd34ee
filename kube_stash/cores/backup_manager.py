################################################################################
# KUBE-STASH
#
# @file:        backup_manager.py
# @module:      kube_stash.cores.backup_manager
# @description: Drives one backup run: cluster artifacts, targets, sealing.
# @author:      Kube-Stash Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Unknown target names fail with ConfigError before the first cluster call
# - Cluster artifacts are informational; their errors never fail the run
# - Targets run in a ThreadPoolExecutor (parallel_workers, default 1)
# - ArchiveWriteError aborts the run; every other failure is a target status
################################################################################

"""
Backup management module for Kube-Stash.

BackupManager opens a run, saves the cluster-level artifacts, captures
every selected target through the SnapshotCollector and seals the run.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional, Sequence

from ..errors import ArchiveWriteError, GatewayError
from ..helpers.logging import get_logger
from ..helpers.system_utils import SystemUtils
from ..types import BackupRun, BackupTarget, CaptureStatus, SnapshotManifest
from .archive_writer import ArchiveWriter
from .collector import CANCELLED_REASON, SnapshotCollector
from .gateway import ClusterGateway
from .registry import TargetRegistry

logger = get_logger(__name__)

TOP_NODES_KIND = "top-nodes"


class BackupManager:
    """
    Orchestrates a complete backup run.

    Args:
        config: StashConfig
        gateway: Cluster access
        writer: Archive writer for the backup root
        registry: Validated targets
        cancel_event: Shared cancellation flag
    """

    def __init__(
        self,
        config,
        gateway: ClusterGateway,
        writer: ArchiveWriter,
        registry: TargetRegistry,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.gateway = gateway
        self.writer = writer
        self.registry = registry
        self.cancel_event = cancel_event or threading.Event()
        self.collector = SnapshotCollector(gateway, writer, self.cancel_event)

    def run(self, target_names: Optional[Sequence[str]] = None) -> BackupRun:
        """
        Perform a backup run.

        Args:
            target_names: Restrict the run to these targets (default: all)

        Returns:
            The sealed BackupRun

        Raises:
            ConfigError: Unknown target name
            ArchiveWriteError: Local write failure (run left unsealed). The
                cancel event is set so in-flight captures stop.
        """
        targets = self.registry.list_targets(target_names)
        start_time = time.time()

        run = self.writer.open_run()
        run.target_order = [t.name for t in targets]

        if self.config.backup.capture_cluster_artifacts:
            self.capture_cluster_artifacts(run)

        workers = min(SystemUtils.resolve_workers(self.config.backup.parallel_workers), max(1, len(targets)))
        logger.info(
            f"Capturing {len(targets)} targets with {workers} worker(s)",
            extra={"run_id": run.run_id, "workers": workers},
        )

        fatal: Optional[ArchiveWriteError] = None
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [(target, executor.submit(self.collector.capture_target, target, run)) for target in targets]
            for target, future in futures:
                if fatal is not None:
                    future.cancel()
                    continue
                try:
                    future.result()
                except ArchiveWriteError as e:
                    logger.error(f"Local write failed, aborting run: {e}", extra={"run_id": run.run_id})
                    fatal = e
                    # stops captures already streaming
                    self.cancel_event.set()
                except Exception as e:
                    logger.error(
                        f"Unexpected error capturing {target.name}: {e}",
                        extra={"target": target.name, "run_id": run.run_id},
                    )
                    self._record_failure(run, target, CaptureStatus.partial_failure(str(e)))

        if fatal is not None:
            self.writer.release(run)
            raise fatal

        for target in targets:
            if run.manifest_for(target.name) is None:
                self._record_failure(run, target, CaptureStatus.skipped(CANCELLED_REASON))

        cancelled = self.cancel_event.is_set()
        summary = self.writer.finalize(run, cancelled=cancelled)

        duration = time.time() - start_time
        if summary["success"]:
            logger.info(
                f"Backup run {run.run_id} completed successfully in {duration:.2f}s",
                extra={"run_id": run.run_id, "duration": duration},
            )
        else:
            logger.warning(
                f"Backup run {run.run_id} completed with problems in {duration:.2f}s: {summary['counts']}",
                extra={"run_id": run.run_id, "duration": duration, "cancelled": cancelled},
            )
        return run

    def capture_cluster_artifacts(self, run: BackupRun) -> None:
        """Save the configured cluster-level artifacts under cluster/."""
        for artifact in self.config.cluster_artifacts:
            if self.cancel_event.is_set():
                self.writer.record_artifact_error(run, artifact.name, CANCELLED_REASON)
                continue
            try:
                if artifact.kind == TOP_NODES_KIND:
                    data = self.gateway.run_text(["top", "nodes"], "Reading node resources").encode("utf-8")
                else:
                    data = self.gateway.get_resource(
                        artifact.kind,
                        namespace=artifact.namespace,
                        name=artifact.resource_name,
                        all_namespaces=artifact.all_namespaces,
                    )
            except GatewayError as e:
                logger.warning(
                    f"Cluster artifact {artifact.name} not captured: {e}",
                    extra={"run_id": run.run_id, "artifact": artifact.name},
                )
                self.writer.record_artifact_error(run, artifact.name, str(e))
                if artifact.fallback_text is not None:
                    self.writer.write_artifact(run, artifact.name, artifact.fallback_text.encode("utf-8"))
                continue
            self.writer.write_artifact(run, artifact.name, data)
            logger.debug(f"Saved cluster artifact {artifact.name}", extra={"run_id": run.run_id})

    def _record_failure(self, run: BackupRun, target: BackupTarget, status: CaptureStatus) -> None:
        self.writer.write_manifest(
            run,
            SnapshotManifest(target_name=target.name, captured_at=datetime.now(), status=status, target=target),
        )
