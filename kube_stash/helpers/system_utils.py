"""
System utilities module for Kube-Stash.

Resource probing used to size the backup worker pool, plus the kubectl
availability check.
"""

import shutil
from typing import Union

import psutil

from .constants import MAX_PARALLEL_TARGETS, RAM_WORKER_THRESHOLDS
from .logging import get_logger

logger = get_logger(__name__)


class SystemUtils:
    """System utilities for resource-based sizing and dependency checks."""

    @staticmethod
    def check_kubectl(binary: str = "kubectl") -> bool:
        """
        Check if kubectl is installed.

        Returns:
            True if the binary is on PATH (or is an existing path)
        """
        return shutil.which(binary) is not None

    @staticmethod
    def get_available_ram() -> float:
        """
        Get total system RAM in gigabytes.

        Returns:
            RAM in GB
        """
        try:
            memory = psutil.virtual_memory()
            return memory.total / (1024 ** 3)
        except Exception as e:
            logger.error(f"Failed to get RAM info: {e}")
            return 2.0

    @staticmethod
    def get_cpu_count() -> int:
        try:
            return psutil.cpu_count(logical=True) or 1
        except Exception:
            return 1

    @staticmethod
    def get_optimal_workers() -> int:
        """
        Calculate the number of targets to capture in parallel.

        Streams are network and disk bound, so RAM decides the tier and the
        CPU count only caps it.

        Returns:
            Recommended number of workers (1..MAX_PARALLEL_TARGETS)
        """
        ram_gb = SystemUtils.get_available_ram()
        cpu_count = SystemUtils.get_cpu_count()

        ram_workers = 1
        for threshold_gb, workers in RAM_WORKER_THRESHOLDS:
            if ram_gb <= threshold_gb:
                ram_workers = workers
                break

        optimal = max(1, min(ram_workers, cpu_count, MAX_PARALLEL_TARGETS))
        logger.debug(
            f"System has {ram_gb:.1f}GB RAM, {cpu_count} CPUs. Recommending {optimal} workers."
        )
        return optimal

    @staticmethod
    def resolve_workers(setting: Union[int, str]) -> int:
        """Turn the parallel_workers config value into a worker count."""
        if setting == "auto":
            return SystemUtils.get_optimal_workers()
        return max(1, min(int(setting), MAX_PARALLEL_TARGETS))
