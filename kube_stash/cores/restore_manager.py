################################################################################
# KUBE-STASH
#
# @file:        restore_manager.py
# @module:      kube_stash.cores.restore_manager
# @description: Restore state machine: scale down, transfer pod, stream, verify, scale up.
# @author:      Kube-Stash Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Targets are restored one after another, never in parallel
# - Any failure ends in Failed: transfer pod removed, replicas stay at 0
# - The pre-restore replica count lives in a deployment annotation so a
#   re-run after a failure scales back to the right value
# - Data is overlaid onto the volume, existing files are not wiped
################################################################################

"""
Restore management module for Kube-Stash.

Per target:
    Idle -> ScaledDown -> TransferPodReady -> DataRestored -> Verified
         -> ScaledUp -> Done
Any step may end in Failed(reason). A failed target is never scaled up.
With verification turned off, Verified is still entered but no checksum
is compared.
"""

import hashlib
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..errors import ConfigError, GatewayError, RunFormatError
from ..helpers.constants import (
    MANAGED_BY_LABEL,
    PRE_RESTORE_REPLICAS_ANNOTATION,
    TRANSFER_MOUNT_PATH,
    TRANSFER_POD_PREFIX,
)
from ..helpers.logging import get_logger
from ..types import (
    BackupRun,
    BackupTarget,
    PodRef,
    ResourceRef,
    RestorePlan,
    RestoreState,
    RestoreStep,
    TargetRestoreResult,
)
from .gateway import ClusterGateway
from .safe_exit_manager import SafeExitManager, ScaledDownHandler, TransferPodHandler

logger = get_logger(__name__)

TARGET_LABEL = "kube-stash.io/target"


class _TargetFailed(Exception):
    """Internal: ends the current target in Failed(reason)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class _HashingReader:
    """File wrapper that hashes and counts what the gateway actually reads."""

    def __init__(self, fileobj):
        self._f = fileobj
        self._hash = hashlib.sha256()
        self.size = 0

    def read(self, n: int = -1) -> bytes:
        chunk = self._f.read(n)
        self._hash.update(chunk)
        self.size += len(chunk)
        return chunk

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


def selector_from_deployment(deployment: Dict[str, Any]) -> str:
    labels = deployment.get("spec", {}).get("selector", {}).get("matchLabels") or {}
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def claim_for_mount(deployment: Dict[str, Any], mount_path: str) -> Optional[str]:
    """Find the PVC a deployment mounts at mount_path."""
    pod_spec = deployment.get("spec", {}).get("template", {}).get("spec", {})
    volume_name = None
    for container in pod_spec.get("containers") or []:
        for mount in container.get("volumeMounts") or []:
            if mount.get("mountPath", "").rstrip("/") == mount_path.rstrip("/"):
                volume_name = mount.get("name")
                break
        if volume_name:
            break
    if not volume_name:
        return None
    for volume in pod_spec.get("volumes") or []:
        if volume.get("name") == volume_name:
            return (volume.get("persistentVolumeClaim") or {}).get("claimName")
    return None


def transfer_pod_name(target: BackupTarget) -> str:
    return f"{TRANSFER_POD_PREFIX}{target.name}"


def transfer_pod_manifest(target: BackupTarget, claim: str, image: str, lifetime: int) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": transfer_pod_name(target),
            "namespace": target.namespace,
            "labels": {MANAGED_BY_LABEL: "kube-stash", TARGET_LABEL: target.name},
        },
        "spec": {
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": "transfer",
                    "image": image,
                    "command": ["sleep", str(lifetime)],
                    "volumeMounts": [{"name": "data", "mountPath": TRANSFER_MOUNT_PATH}],
                }
            ],
            "volumes": [{"name": "data", "persistentVolumeClaim": {"claimName": claim}}],
        },
    }


class RestoreManager:
    """
    Restores targets of a sealed BackupRun into the cluster.

    Args:
        gateway: Cluster access
        restore_config: RestoreConfig (timeouts, transfer image, verify)
        cancel_event: Shared cancellation flag
    """

    def __init__(self, gateway: ClusterGateway, restore_config, cancel_event: Optional[threading.Event] = None):
        self.gateway = gateway
        self.config = restore_config
        self.cancel_event = cancel_event or threading.Event()
        self.scaled_down = ScaledDownHandler()
        self.transfer_pods = TransferPodHandler(gateway)

    # --------------- planning ---------------

    def build_plan(self, run: BackupRun, target_names: Optional[Sequence[str]] = None) -> RestorePlan:
        """
        Build the ordered restore plan for a loaded run.

        Without target_names, targets that captured no data archive are left
        out of the steps and listed in plan.skipped instead. Named targets are
        always planned.

        Raises:
            ConfigError: A requested target is not part of the run
            RunFormatError: A manifest lacks its target definition
        """
        names = list(target_names) if target_names else list(run.target_order)
        unknown = [n for n in names if run.manifest_for(n) is None]
        if unknown:
            raise ConfigError(f"Target(s) not in run {run.run_id}: {', '.join(unknown)}")

        steps = []
        skipped = {}
        for manifest in run.ordered_manifests():
            if manifest.target_name not in names:
                continue
            if manifest.target is None:
                raise RunFormatError(f"Manifest of {manifest.target_name} has no target definition")
            data = manifest.data
            if data is None and not target_names:
                skipped[manifest.target_name] = f"no data archive ({manifest.status})"
                continue
            steps.append(
                RestoreStep(
                    target=manifest.target,
                    archive_path=run.directory / data.file if data else None,
                    sha256=data.sha256 if data else None,
                    size_bytes=data.size_bytes if data else None,
                )
            )
        return RestorePlan(run_id=run.run_id, run_directory=run.directory, steps=steps, skipped=skipped)

    # --------------- execution ---------------

    def execute(self, plan: RestorePlan) -> List[TargetRestoreResult]:
        """Run every step sequentially; returns one result per step."""
        safe_exit = SafeExitManager.get_instance()
        safe_exit.register_handler(self.scaled_down)
        safe_exit.register_handler(self.transfer_pods)
        results = []
        try:
            for step in plan.steps:
                if self.cancel_event.is_set():
                    result = TargetRestoreResult(step.target.name, transitions=[RestoreState.IDLE])
                    self._fail(step, result, "cancelled", None)
                    results.append(result)
                    continue
                results.append(self.restore_target(step))
        finally:
            safe_exit.unregister_handler(self.scaled_down)
            safe_exit.unregister_handler(self.transfer_pods)
        return results

    def restore_target(self, step: RestoreStep) -> TargetRestoreResult:
        target = step.target
        result = TargetRestoreResult(target.name, transitions=[RestoreState.IDLE])
        logger.info(f"Restoring {target.name}", extra={"target": target.name})
        pod = None
        try:
            self._preflight(step)
            deployment = self._scale_down(target, result)
            self._transition(result, RestoreState.SCALED_DOWN)

            self._check_cancel()
            pod = self._provision_transfer_pod(target, deployment, result)
            self._transition(result, RestoreState.TRANSFER_POD_READY)

            self._check_cancel()
            self._stream_data_in(step, pod, result)
            self._transition(result, RestoreState.DATA_RESTORED)

            if self.config.verify:
                self._verify(step, result)
            else:
                logger.warning(f"{target.name}: checksum verification skipped", extra={"target": target.name})
            self._transition(result, RestoreState.VERIFIED)

            self._check_cancel()
            self._scale_up(target, pod, result)
            pod = None
            self._transition(result, RestoreState.SCALED_UP)
            self._transition(result, RestoreState.DONE)
        except _TargetFailed as e:
            self._fail(step, result, e.reason, pod)
        return result

    def _transition(self, result: TargetRestoreResult, state: RestoreState) -> None:
        result.state = state
        result.transitions.append(state)
        logger.info(f"{result.target_name}: {state.value}", extra={"target": result.target_name, "state": state.value})

    def _check_cancel(self) -> None:
        if self.cancel_event.is_set():
            raise _TargetFailed("cancelled")

    def _preflight(self, step: RestoreStep) -> None:
        if step.archive_path is None:
            raise _TargetFailed("no data archive in run")
        if not Path(step.archive_path).is_file():
            raise _TargetFailed(f"archive missing: {Path(step.archive_path).name}")
        if self.config.verify and not step.sha256:
            raise _TargetFailed("no checksum recorded")

    def _scale_down(self, target: BackupTarget, result: TargetRestoreResult) -> Dict[str, Any]:
        ns, name = target.namespace, target.deployment_name
        try:
            deployment = self.gateway.get_json("deployment", ns, name=name)
        except GatewayError as e:
            raise _TargetFailed(f"deployment lookup failed: {e.cause}")

        annotations = deployment.get("metadata", {}).get("annotations") or {}
        recorded = annotations.get(PRE_RESTORE_REPLICAS_ANNOTATION)
        if recorded is not None:
            try:
                original = int(recorded)
            except ValueError:
                raise _TargetFailed(f"bad {PRE_RESTORE_REPLICAS_ANNOTATION} annotation: {recorded!r}")
            logger.info(
                f"{target.name}: reusing recorded replica count {original} from an earlier restore",
                extra={"target": target.name, "replicas": original},
            )
        else:
            replicas = deployment.get("spec", {}).get("replicas")
            original = 1 if replicas is None else int(replicas)
        result.original_replicas = original

        selector = target.pod_selector or selector_from_deployment(deployment)
        if not selector:
            raise _TargetFailed("no pod selector to wait on")

        try:
            if recorded is None:
                self.gateway.annotate(ns, "deployment", name, PRE_RESTORE_REPLICAS_ANNOTATION, str(original))
            self.scaled_down.register_deployment(ns, name, original)
            self.gateway.scale(ns, name, 0)
            result.final_replicas = 0
        except GatewayError as e:
            self.scaled_down.unregister_deployment(ns, name)
            raise _TargetFailed(f"scale down failed: {e.cause}")

        try:
            self.gateway.wait_for_condition(
                ResourceRef("pod", ns, selector=selector), "delete", self.config.scale_timeout
            )
        except GatewayError as e:
            if e.kind == GatewayError.NOT_FOUND:
                return deployment
            if e.kind == GatewayError.TIMEOUT:
                raise _TargetFailed("pods did not terminate")
            raise _TargetFailed(f"waiting for pods failed: {e.cause}")
        return deployment

    def _provision_transfer_pod(
        self, target: BackupTarget, deployment: Dict[str, Any], result: TargetRestoreResult
    ) -> PodRef:
        claim = target.pvc or claim_for_mount(deployment, target.mount_path)
        if not claim:
            raise _TargetFailed(f"no volume claim mounted at {target.mount_path}")

        stale = PodRef(target.namespace, transfer_pod_name(target))
        try:
            self.gateway.delete_pod(stale)
        except GatewayError as e:
            raise _TargetFailed(f"cannot remove stale transfer pod: {e.cause}")

        manifest = transfer_pod_manifest(
            target,
            claim,
            self.config.transfer_image,
            self.config.transfer_pod_timeout + self.config.scale_timeout + 3600,
        )
        try:
            pod = self.gateway.create_pod(manifest)
        except GatewayError as e:
            raise _TargetFailed(f"transfer pod not created: {e.cause}")
        self.transfer_pods.register_pod(pod)
        result.transfer_pod = str(pod)

        try:
            self.gateway.wait_for_condition(
                ResourceRef("pod", pod.namespace, name=pod.name), "condition=Ready", self.config.transfer_pod_timeout
            )
        except GatewayError as e:
            logger.error(f"{target.name}: transfer pod {pod} not ready: {e}", extra={"target": target.name})
            raise _TargetFailed("transfer pod not ready")
        return pod

    def _stream_data_in(self, step: RestoreStep, pod: PodRef, result: TargetRestoreResult) -> None:
        target = step.target
        command = ["tar", target.tar_extract_flags, "-", "-C", TRANSFER_MOUNT_PATH]
        try:
            with open(step.archive_path, "rb") as f:
                reader = _HashingReader(f)
                exit_code = self.gateway.exec_stream_in(pod, command, reader)
        except OSError as e:
            raise _TargetFailed(f"cannot read archive: {e}")
        except GatewayError as e:
            raise _TargetFailed("cancelled" if e.kind == GatewayError.CANCELLED else f"stream failed: {e.cause}")

        result.bytes_streamed = reader.size
        result.streamed_sha256 = reader.hexdigest()
        if exit_code != 0:
            raise _TargetFailed(f"exit {exit_code}")
        logger.info(
            f"{target.name}: streamed {reader.size} bytes into {pod}",
            extra={"target": target.name, "size_bytes": reader.size},
        )

    def _verify(self, step: RestoreStep, result: TargetRestoreResult) -> None:
        if result.streamed_sha256 != step.sha256 or result.bytes_streamed != step.size_bytes:
            logger.error(
                f"{step.target.name}: expected {step.sha256} ({step.size_bytes} bytes), "
                f"streamed {result.streamed_sha256} ({result.bytes_streamed} bytes)",
                extra={"target": step.target.name},
            )
            raise _TargetFailed("checksum mismatch")

    def _scale_up(self, target: BackupTarget, pod: PodRef, result: TargetRestoreResult) -> None:
        ns, name = target.namespace, target.deployment_name
        try:
            self.gateway.delete_pod(pod)
        except GatewayError as e:
            raise _TargetFailed(f"cannot remove transfer pod: {e.cause}")
        self.transfer_pods.unregister_pod(pod)
        result.transfer_pod = None

        replicas = result.original_replicas or 0
        try:
            self.gateway.scale(ns, name, replicas)
        except GatewayError as e:
            raise _TargetFailed(f"scale up failed: {e.cause}")
        result.final_replicas = replicas
        self.scaled_down.unregister_deployment(ns, name)

        try:
            self.gateway.annotate(ns, "deployment", name, PRE_RESTORE_REPLICAS_ANNOTATION, None)
        except GatewayError as e:
            logger.warning(
                f"{target.name}: could not remove {PRE_RESTORE_REPLICAS_ANNOTATION}: {e}",
                extra={"target": target.name},
            )

        if self.config.rollout_timeout and replicas > 0:
            try:
                self.gateway.wait_for_condition(
                    ResourceRef("deployment", ns, name=name), "condition=Available", self.config.rollout_timeout
                )
            except GatewayError as e:
                logger.warning(f"{target.name}: deployment not available yet: {e}", extra={"target": target.name})

    def _fail(self, step: RestoreStep, result: TargetRestoreResult, reason: str, pod: Optional[PodRef]) -> None:
        target = step.target
        result.state = RestoreState.FAILED
        result.reason = reason
        result.transitions.append(RestoreState.FAILED)

        if pod is None and result.transfer_pod:
            pod = PodRef(target.namespace, transfer_pod_name(target))
        if pod is not None:
            try:
                self.gateway.delete_pod(pod)
                self.transfer_pods.unregister_pod(pod)
                result.transfer_pod = None
            except GatewayError as e:
                logger.error(f"{target.name}: transfer pod {pod} left behind: {e}", extra={"target": target.name})

        logger.error(f"{target.name}: {result}", extra={"target": target.name, "state": RestoreState.FAILED.value})
        if result.left_scaled_down:
            logger.error(
                f"{target.namespace}/{target.deployment_name} left at 0 replicas (was {result.original_replicas}). "
                f"Re-run the restore or scale back with: kubectl scale deployment/{target.deployment_name} "
                f"-n {target.namespace} --replicas={result.original_replicas}",
                extra={"target": target.name, "replicas": result.original_replicas},
            )
        self.scaled_down.unregister_deployment(target.namespace, target.deployment_name)
