"""
Snapshot collection for Kube-Stash.

Captures one target per call: declarative resources first, then a tar
stream of the mount path from a running pod. Every shortfall becomes a
typed status on the manifest instead of a warning line.
"""

import threading
from datetime import datetime
from typing import List, Optional

from ..errors import GatewayError
from ..helpers.logging import get_logger
from ..types import BackupRun, BackupTarget, CaptureStatus, ResourceCapture, SnapshotManifest
from .archive_writer import ArchiveWriter
from .gateway import ClusterGateway

logger = get_logger(__name__)

NO_POD_REASON = "no pod found"
CANCELLED_REASON = "cancelled"


class SnapshotCollector:
    """
    Captures BackupTargets through the gateway into the archive writer.

    Never retries; retry policy belongs to whoever invokes the collector.
    """

    def __init__(
        self,
        gateway: ClusterGateway,
        writer: ArchiveWriter,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.gateway = gateway
        self.writer = writer
        self.cancel_event = cancel_event or threading.Event()

    def capture_target(self, target: BackupTarget, run: BackupRun) -> SnapshotManifest:
        """
        Capture one target into the run.

        Returns:
            The manifest (also persisted via the writer)

        Raises:
            ArchiveWriteError: Local write failed; the run must abort
        """
        logger.info(f"Capturing {target.name}", extra={"target": target.name, "run_id": run.run_id})
        captured_at = datetime.now()

        if self.cancel_event.is_set():
            return self._record(run, target, captured_at, CaptureStatus.skipped(CANCELLED_REASON), [])

        resources = self._capture_resources(target, run)

        try:
            pods = self.gateway.find_pods(target.namespace, target.pod_selector)
        except GatewayError as e:
            logger.warning(f"{target.name}: pod lookup failed: {e}", extra={"target": target.name})
            status = CaptureStatus.partial_failure(f"pod lookup failed: {e.cause}")
            return self._record(run, target, captured_at, status, resources)

        if not pods:
            logger.warning(f"{target.name}: no running pod in {target.namespace}", extra={"target": target.name})
            return self._record(run, target, captured_at, CaptureStatus.skipped(NO_POD_REASON), resources)

        pod = pods[0]
        if len(pods) > 1:
            logger.debug(f"{target.name}: {len(pods)} pods match, using {pod.name}")

        command = ["tar", target.tar_create_flags, "-", "-C", target.mount_path, "."]
        data = None
        with self.writer.open_data_stream(run, target) as stream:
            try:
                exit_code = self.gateway.exec_stream_out(pod, command, stream)
            except GatewayError as e:
                stream.discard()
                status = CaptureStatus.partial_failure(
                    CANCELLED_REASON if e.kind == GatewayError.CANCELLED else f"stream failed: {e.cause}"
                )
                return self._record(run, target, captured_at, status, resources, pod=pod.name)

            if exit_code != 0:
                stream.discard()
                logger.warning(
                    f"{target.name}: tar in {pod} exited with {exit_code}",
                    extra={"target": target.name, "exit_code": exit_code},
                )
                status = CaptureStatus.partial_failure(f"exit {exit_code}")
                return self._record(run, target, captured_at, status, resources, pod=pod.name)

            data = stream.commit()

        logger.info(
            f"{target.name}: archived {data.size_bytes} bytes from {pod}",
            extra={"target": target.name, "size_bytes": data.size_bytes},
        )
        return self._record(run, target, captured_at, CaptureStatus.success(), resources, data=data, pod=pod.name)

    def _capture_resources(self, target: BackupTarget, run: BackupRun) -> List[ResourceCapture]:
        fetches = [
            ("deployment", dict(name=target.deployment_name)),
            ("pvc", {}),
        ]
        captured = []
        for kind, kwargs in fetches:
            try:
                document = self.gateway.get_resource(kind, target.namespace, **kwargs)
            except GatewayError as e:
                logger.warning(f"{target.name}: no {kind} captured: {e}", extra={"target": target.name})
                captured.append(ResourceCapture(kind, CaptureStatus.skipped(f"{e.kind}: {e.cause}")))
                continue
            file_name = self.writer.write_resource(run, target.name, kind, document)
            captured.append(ResourceCapture(kind, CaptureStatus.success(), document=document, file=file_name))
        return captured

    def _record(self, run, target, captured_at, status, resources, data=None, pod=None) -> SnapshotManifest:
        manifest = SnapshotManifest(
            target_name=target.name,
            captured_at=captured_at,
            status=status,
            declarative_resources=tuple(resources),
            data=data,
            target=target,
            pod=pod,
        )
        self.writer.write_manifest(run, manifest)
        return manifest
