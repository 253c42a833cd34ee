################################################################################
# KUBE-STASH
#
# @file:        gateway.py
# @module:      kube_stash.cores.gateway
# @description: Thin synchronous facade over the cluster control plane (kubectl).
# @author:      Kube-Stash Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - The only component that talks to the outside world; owns no state
# - Every call carries a timeout; failures surface as GatewayError(kind, cause)
# - Streams copy in CHUNK_SIZE blocks and honour the shared cancel event
################################################################################

"""
Cluster gateway for Kube-Stash.

ClusterGateway defines the operations the collector and the restore
orchestrator need. KubectlGateway implements them by shelling out to
kubectl, the same way the old backup script did, but with explicit
kubeconfig/context/timeouts instead of ambient CLI state.
"""

from __future__ import annotations

import json
import re
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Dict, List, Optional

from ..errors import GatewayError
from ..helpers.constants import CHUNK_SIZE
from ..helpers.logging import get_logger
from ..helpers.ui_utils import SubprocessError, run_command
from ..types import PodRef, ResourceRef
from .safe_exit_manager import SafeExitManager

logger = get_logger(__name__)

_EXIT_CODE_RE = re.compile(r"command terminated with exit code (\d+)")
_AUTH_MARKERS = ("forbidden", "unauthorized", "you must be logged in", "provide credentials")
_NOT_FOUND_MARKERS = ("notfound", "not found", "no resources found", "no matching resources")
_TIMEOUT_MARKERS = ("timed out", "timeout", "deadline exceeded")


def classify_error(stderr: str) -> str:
    """Map kubectl stderr onto a GatewayError kind."""
    text = (stderr or "").lower()
    if any(m in text for m in _AUTH_MARKERS):
        return GatewayError.AUTH
    if any(m in text for m in _NOT_FOUND_MARKERS):
        return GatewayError.NOT_FOUND
    if any(m in text for m in _TIMEOUT_MARKERS):
        return GatewayError.TIMEOUT
    return GatewayError.TRANSPORT


class ClusterGateway(ABC):
    """Operations Kube-Stash needs from the control plane."""

    @abstractmethod
    def get_resource(
        self,
        kind: str,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
        all_namespaces: bool = False,
    ) -> bytes:
        """Raw (YAML) document of one resource or a list."""

    @abstractmethod
    def get_json(
        self,
        kind: str,
        namespace: Optional[str] = None,
        name: Optional[str] = None,
        selector: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Parsed JSON document of one resource or a list."""

    @abstractmethod
    def find_pods(self, namespace: str, selector: str = "") -> List[PodRef]:
        """Running pods matching selector, sorted by name."""

    @abstractmethod
    def exec_stream_out(self, pod: PodRef, command: List[str], sink: BinaryIO) -> int:
        """Run command in pod, copy its stdout into sink; return exit status."""

    @abstractmethod
    def exec_stream_in(self, pod: PodRef, command: List[str], source: BinaryIO) -> int:
        """Run command in pod with source copied to its stdin; return exit status."""

    @abstractmethod
    def scale(self, namespace: str, deployment: str, replicas: int) -> None:
        """Set the replica count of a deployment."""

    @abstractmethod
    def wait_for_condition(self, resource: ResourceRef, condition: str, timeout: float) -> None:
        """Block until condition holds (kubectl wait syntax); TIMEOUT otherwise."""

    @abstractmethod
    def create_pod(self, manifest: Dict[str, Any]) -> PodRef:
        """Create a pod from a manifest."""

    @abstractmethod
    def delete_pod(self, pod: PodRef) -> None:
        """Delete a pod and wait for it; absent pods are fine."""

    @abstractmethod
    def annotate(
        self, namespace: str, kind: str, name: str, key: str, value: Optional[str]
    ) -> None:
        """Set (or with value=None remove) an annotation."""

    @abstractmethod
    def run_text(self, args: List[str], description: str) -> str:
        """Plain-text output of an informational command (e.g. top nodes)."""


class _Watchdog:
    """Kills a streaming child on timeout or cancellation."""

    def __init__(self, proc: subprocess.Popen, timeout: float, cancel_event: Optional[threading.Event]):
        self.proc = proc
        self.deadline = time.monotonic() + timeout
        self.cancel_event = cancel_event
        self.timed_out = False
        self.cancelled = False
        self._thread = threading.Thread(target=self._watch, daemon=True)

    def __enter__(self) -> _Watchdog:
        self._thread.start()
        return self

    def __exit__(self, *exc) -> None:
        self._thread.join(timeout=5)

    def _watch(self) -> None:
        while self.proc.poll() is None:
            if self.cancel_event is not None and self.cancel_event.is_set():
                self.cancelled = True
                self.proc.kill()
                return
            if time.monotonic() >= self.deadline:
                self.timed_out = True
                self.proc.kill()
                return
            time.sleep(0.2)


def _drain(stream, buffer: bytearray) -> threading.Thread:
    def _reader():
        for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
            buffer.extend(chunk)

    thread = threading.Thread(target=_reader, daemon=True)
    thread.start()
    return thread


class KubectlGateway(ClusterGateway):
    """
    ClusterGateway backed by the kubectl binary.

    Args:
        kubectl: Binary name or path
        kubeconfig: Optional kubeconfig file
        context: Optional kubeconfig context
        request_timeout: Seconds for get/scale/apply calls
        stream_timeout: Seconds for exec data streams
        cancel_event: Set to abort in-flight streams
    """

    def __init__(
        self,
        kubectl: str = "kubectl",
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        request_timeout: int = 60,
        stream_timeout: int = 1800,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.kubectl = kubectl
        self.kubeconfig = str(kubeconfig) if kubeconfig else None
        self.context = context
        self.request_timeout = request_timeout
        self.stream_timeout = stream_timeout
        self.cancel_event = cancel_event

    @classmethod
    def from_config(cls, cluster_config, cancel_event: Optional[threading.Event] = None) -> KubectlGateway:
        return cls(
            kubectl=cluster_config.kubectl,
            kubeconfig=cluster_config.kubeconfig,
            context=cluster_config.context,
            request_timeout=cluster_config.request_timeout,
            stream_timeout=cluster_config.stream_timeout,
            cancel_event=cancel_event,
        )

    # ---------------------------------------------------------------------
    # Command plumbing
    # ---------------------------------------------------------------------

    def _cancel_requested(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _base_cmd(self) -> List[str]:
        cmd = [self.kubectl]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubeconfig])
        if self.context:
            cmd.extend(["--context", self.context])
        return cmd

    def _run(
        self,
        args: List[str],
        description: str,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        cmd = self._base_cmd() + args
        timeout = timeout or self.request_timeout
        try:
            return run_command(cmd, description, timeout=timeout, check=True, input=input)
        except FileNotFoundError as e:
            raise GatewayError(GatewayError.TRANSPORT, f"{self.kubectl} not found", description) from e
        except subprocess.TimeoutExpired as e:
            raise GatewayError(
                GatewayError.TIMEOUT, f"{description} timed out after {timeout}s", description
            ) from e
        except SubprocessError as e:
            if self._cancel_requested():
                raise GatewayError(GatewayError.CANCELLED, f"{description} cancelled", description) from e
            cause = e.stderr.strip() or f"exit {e.returncode}"
            raise GatewayError(classify_error(e.stderr), cause, description) from e

    @staticmethod
    def _scope(namespace: Optional[str], all_namespaces: bool) -> List[str]:
        if all_namespaces:
            return ["-A"]
        if namespace:
            return ["-n", namespace]
        return []

    # ---------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------

    def get_resource(self, kind, namespace=None, name=None, all_namespaces=False) -> bytes:
        args = ["get", kind] + ([name] if name else [])
        args += self._scope(namespace, all_namespaces) + ["-o", "yaml"]
        result = self._run(args, f"Getting {kind}")
        return result.stdout.encode("utf-8")

    def get_json(self, kind, namespace=None, name=None, selector=None) -> Dict[str, Any]:
        args = ["get", kind] + ([name] if name else [])
        args += self._scope(namespace, False)
        if selector:
            args += ["-l", selector]
        args += ["-o", "json"]
        result = self._run(args, f"Getting {kind} as JSON")
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise GatewayError(GatewayError.TRANSPORT, f"unparseable {kind} JSON: {e}") from e

    def find_pods(self, namespace: str, selector: str = "") -> List[PodRef]:
        args = ["get", "pods", "-n", namespace, "--field-selector=status.phase=Running"]
        if selector:
            args += ["-l", selector]
        args += ["-o", "json"]
        result = self._run(args, f"Finding pods in {namespace}")
        try:
            items = json.loads(result.stdout).get("items", [])
        except json.JSONDecodeError as e:
            raise GatewayError(GatewayError.TRANSPORT, f"unparseable pod list: {e}") from e
        names = sorted(
            item["metadata"]["name"]
            for item in items
            if not item.get("metadata", {}).get("deletionTimestamp")
        )
        return [PodRef(namespace, n) for n in names]

    def run_text(self, args: List[str], description: str) -> str:
        return self._run(list(args), description).stdout

    # ---------------------------------------------------------------------
    # Streams
    # ---------------------------------------------------------------------

    def _stream_result(self, cmd: List[str], rc: int, stderr: bytes, watchdog: _Watchdog, what: str) -> int:
        text = stderr.decode("utf-8", errors="replace").strip()
        # SafeExitManager.cancel() may kill the child before the watchdog notices
        if watchdog.cancelled or (rc != 0 and self._cancel_requested()):
            raise GatewayError(GatewayError.CANCELLED, f"{what} cancelled", " ".join(cmd))
        if watchdog.timed_out:
            raise GatewayError(
                GatewayError.TIMEOUT, f"{what} exceeded {self.stream_timeout}s", " ".join(cmd)
            )
        if rc == 0:
            return 0
        match = _EXIT_CODE_RE.search(text)
        if match:
            return int(match.group(1))
        if text and (text.startswith("error") or text.startswith("Error from server")):
            raise GatewayError(classify_error(text), text, " ".join(cmd))
        return rc

    def _spawn(self, cmd: List[str], stdin) -> subprocess.Popen:
        try:
            return subprocess.Popen(cmd, stdin=stdin, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError as e:
            raise GatewayError(GatewayError.TRANSPORT, f"{self.kubectl} not found") from e

    def exec_stream_out(self, pod: PodRef, command: List[str], sink: BinaryIO) -> int:
        cmd = self._base_cmd() + ["exec", "-n", pod.namespace, pod.name, "--"] + list(command)
        logger.debug(f"Streaming out of {pod}: {' '.join(command)}")
        proc = self._spawn(cmd, subprocess.DEVNULL)
        safe_exit = SafeExitManager.get_instance()
        cleanup_id = safe_exit.register_process(proc.pid, f"exec {pod}")
        stderr = bytearray()
        try:
            with _Watchdog(proc, self.stream_timeout, self.cancel_event) as watchdog:
                err_thread = _drain(proc.stderr, stderr)
                try:
                    for chunk in iter(lambda: proc.stdout.read(CHUNK_SIZE), b""):
                        sink.write(chunk)
                except OSError:
                    proc.kill()
                    raise
                rc = proc.wait()
                err_thread.join(timeout=5)
        finally:
            safe_exit.unregister_process(cleanup_id)
        return self._stream_result(cmd, rc, bytes(stderr), watchdog, f"stream from {pod}")

    def exec_stream_in(self, pod: PodRef, command: List[str], source: BinaryIO) -> int:
        cmd = self._base_cmd() + ["exec", "-i", "-n", pod.namespace, pod.name, "--"] + list(command)
        logger.debug(f"Streaming into {pod}: {' '.join(command)}")
        proc = self._spawn(cmd, subprocess.PIPE)
        safe_exit = SafeExitManager.get_instance()
        cleanup_id = safe_exit.register_process(proc.pid, f"exec -i {pod}")
        stdout = bytearray()
        stderr = bytearray()
        try:
            with _Watchdog(proc, self.stream_timeout, self.cancel_event) as watchdog:
                out_thread = _drain(proc.stdout, stdout)
                err_thread = _drain(proc.stderr, stderr)
                try:
                    for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
                        proc.stdin.write(chunk)
                except BrokenPipeError:
                    logger.debug(f"Remote side of {pod} closed stdin early")
                finally:
                    try:
                        proc.stdin.close()
                    except BrokenPipeError:
                        pass
                rc = proc.wait()
                out_thread.join(timeout=5)
                err_thread.join(timeout=5)
        finally:
            safe_exit.unregister_process(cleanup_id)
        return self._stream_result(cmd, rc, bytes(stderr), watchdog, f"stream into {pod}")

    # ---------------------------------------------------------------------
    # Mutations
    # ---------------------------------------------------------------------

    def scale(self, namespace: str, deployment: str, replicas: int) -> None:
        self._run(
            ["scale", f"deployment/{deployment}", "-n", namespace, f"--replicas={replicas}"],
            f"Scaling {namespace}/{deployment} to {replicas}",
        )
        logger.info(
            f"Scaled {namespace}/{deployment} to {replicas}",
            extra={"namespace": namespace, "deployment": deployment, "replicas": replicas},
        )

    def wait_for_condition(self, resource: ResourceRef, condition: str, timeout: float) -> None:
        args = ["wait", f"--for={condition}"]
        if resource.name:
            args.append(f"{resource.kind}/{resource.name}")
        else:
            args.append(resource.kind)
            if resource.selector:
                args += ["-l", resource.selector]
            else:
                args.append("--all")
        if resource.namespace:
            args += ["-n", resource.namespace]
        args.append(f"--timeout={int(timeout)}s")
        # kubectl enforces --timeout itself; the grace period only catches a wedged client
        self._run(args, f"Waiting for {condition} on {resource}", timeout=timeout + 15)

    def create_pod(self, manifest: Dict[str, Any]) -> PodRef:
        meta = manifest.get("metadata", {})
        pod = PodRef(meta.get("namespace", "default"), meta["name"])
        self._run(["create", "-f", "-"], f"Creating pod {pod}", input=json.dumps(manifest))
        return pod

    def delete_pod(self, pod: PodRef) -> None:
        self._run(
            [
                "delete", "pod", pod.name, "-n", pod.namespace,
                "--ignore-not-found", "--wait=true", f"--timeout={self.request_timeout}s",
            ],
            f"Deleting pod {pod}",
            timeout=self.request_timeout + 15,
        )

    def annotate(self, namespace, kind, name, key, value) -> None:
        pair = f"{key}-" if value is None else f"{key}={value}"
        self._run(
            ["annotate", f"{kind}/{name}", "-n", namespace, pair, "--overwrite"],
            f"Annotating {namespace}/{kind}/{name}",
        )
