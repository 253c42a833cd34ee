################################################################################
# KUBE-STASH
#
# @file:        safe_exit_manager.py
# @module:      kube_stash.cores.safe_exit_manager
# @description: Operator abort handling: subprocess tracking plus exit handlers.
# @author:      Kube-Stash Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Process layer: every kubectl child is registered while it runs
# - Strategy layer: handlers run in priority order on a hard abort
# - First SIGINT/SIGTERM cancels gracefully, the second one exits
# - Scaled-down deployments are reported, never silently scaled back up
################################################################################

"""
Safe exit handling for Kube-Stash.

The first signal sets the shared cancel event and terminates tracked
kubectl processes, so in-flight exec streams end and the orchestrators
record "cancelled" results. A second signal runs the exit handlers and
leaves the process.
"""

from __future__ import annotations

import os
import signal
import sys
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..helpers.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TrackedProcess:
    pid: int
    name: str
    registered_at: float = field(default_factory=time.time)


class ExitHandler(ABC):
    """Cleanup strategy executed on hard abort."""

    priority: int = 100
    name: str = "handler"

    @abstractmethod
    def cleanup(self) -> None:
        ...


class SafeExitManager:
    """Singleton coordinating cancellation across the process."""

    _instance: Optional[SafeExitManager] = None
    _instance_lock = threading.Lock()

    TERMINATE_GRACE_SECONDS = 5

    def __init__(self):
        if SafeExitManager._instance is not None:
            raise RuntimeError("Use SafeExitManager.get_instance()")
        self._lock = threading.Lock()
        self._processes: Dict[str, TrackedProcess] = {}
        self._handlers: List[Tuple[ExitHandler, int]] = []
        self._cleanup_in_progress = False
        self._original_sigint = None
        self._original_sigterm = None
        self.cancel_event = threading.Event()

    @classmethod
    def get_instance(cls) -> SafeExitManager:
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        with cls._instance_lock:
            cls._instance = None

    # --------------- signals ---------------

    def install_handlers(self) -> None:
        """Install SIGINT/SIGTERM handlers (main thread only)."""
        self._original_sigint = signal.getsignal(signal.SIGINT)
        self._original_sigterm = signal.getsignal(signal.SIGTERM)
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def restore_handlers(self) -> None:
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
        self._original_sigint = None
        self._original_sigterm = None

    def _signal_handler(self, signum, frame) -> None:
        if not self.cancel_event.is_set():
            logger.warning(
                f"Received signal {signum}: cancelling (send again to abort immediately)",
                extra={"signal": signum},
            )
            self.cancel()
            return
        if self._cleanup_in_progress:
            return
        self._cleanup_in_progress = True
        logger.error(f"Received signal {signum} again: aborting", extra={"signal": signum})
        self._terminate_all_processes()
        self._run_all_handlers()
        sys.exit(128 + signum)

    def cancel(self) -> None:
        """Request cancellation and stop in-flight subprocesses."""
        self.cancel_event.set()
        self._terminate_all_processes()

    # --------------- process layer ---------------

    def register_process(self, pid: int, name: str) -> str:
        cleanup_id = uuid.uuid4().hex
        with self._lock:
            self._processes[cleanup_id] = TrackedProcess(pid=pid, name=name)
        return cleanup_id

    def unregister_process(self, cleanup_id: str) -> None:
        with self._lock:
            self._processes.pop(cleanup_id, None)

    def _terminate_all_processes(self) -> None:
        with self._lock:
            tracked = list(self._processes.values())
            self._processes.clear()
        if not tracked:
            return

        for proc in tracked:
            try:
                os.kill(proc.pid, signal.SIGTERM)
                logger.debug(f"Sent SIGTERM to {proc.name} (pid {proc.pid})")
            except ProcessLookupError:
                pass

        time.sleep(self.TERMINATE_GRACE_SECONDS)

        for proc in tracked:
            try:
                os.kill(proc.pid, 0)
            except ProcessLookupError:
                continue
            try:
                os.kill(proc.pid, signal.SIGKILL)
                logger.warning(f"Killed {proc.name} (pid {proc.pid}) after grace period")
            except ProcessLookupError:
                pass

    # --------------- strategy layer ---------------

    def register_handler(self, handler: ExitHandler) -> None:
        with self._lock:
            self._handlers.append((handler, handler.priority))
            self._handlers.sort(key=lambda item: item[1])

    def unregister_handler(self, handler: ExitHandler) -> None:
        with self._lock:
            self._handlers = [(h, p) for h, p in self._handlers if h is not handler]

    def _run_all_handlers(self) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler, _ in handlers:
            try:
                handler.cleanup()
            except Exception as e:
                logger.error(f"Exit handler {handler.name} failed: {e}")


class ScaledDownHandler(ExitHandler):
    """Reports deployments a restore left at zero replicas."""

    priority = 10
    name = "scaled_down_report"

    def __init__(self):
        self._deployments: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def register_deployment(self, namespace: str, deployment: str, original_replicas: int) -> None:
        with self._lock:
            self._deployments[(namespace, deployment)] = original_replicas

    def unregister_deployment(self, namespace: str, deployment: str) -> None:
        with self._lock:
            self._deployments.pop((namespace, deployment), None)

    def pending(self) -> Dict[Tuple[str, str], int]:
        with self._lock:
            return dict(self._deployments)

    def cleanup(self) -> None:
        for (namespace, deployment), replicas in self.pending().items():
            logger.error(
                f"{namespace}/{deployment} left at 0 replicas (was {replicas}). "
                f"Scale back with: kubectl scale deployment/{deployment} -n {namespace} --replicas={replicas}",
                extra={"namespace": namespace, "deployment": deployment, "replicas": replicas},
            )


class TransferPodHandler(ExitHandler):
    """Deletes transfer pods still running on abort."""

    priority = 20
    name = "transfer_pod_cleanup"

    def __init__(self, gateway):
        self.gateway = gateway
        self._pods = []

    def register_pod(self, pod) -> None:
        if pod not in self._pods:
            self._pods.append(pod)

    def unregister_pod(self, pod) -> None:
        if pod in self._pods:
            self._pods.remove(pod)

    def cleanup(self) -> None:
        for pod in reversed(list(self._pods)):
            try:
                self.gateway.delete_pod(pod)
                logger.info(f"Deleted transfer pod {pod}")
            except Exception as e:
                logger.error(f"Could not delete transfer pod {pod}: {e}")
        self._pods.clear()


class TempFileHandler(ExitHandler):
    """Removes partially written temp files on abort."""

    priority = 30
    name = "temp_file_cleanup"

    def __init__(self):
        self._paths: List[Path] = []
        self._lock = threading.Lock()

    def register_path(self, path: Path) -> None:
        with self._lock:
            self._paths.append(Path(path))

    def unregister_path(self, path: Path) -> None:
        with self._lock:
            self._paths = [p for p in self._paths if p != Path(path)]

    def cleanup(self) -> None:
        with self._lock:
            paths = list(self._paths)
            self._paths.clear()
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove temp file {path}: {e}")
