"""Core business logic modules for Kube-Stash."""

from .archive_writer import ArchiveWriter
from .backup_manager import BackupManager
from .collector import SnapshotCollector
from .gateway import ClusterGateway, KubectlGateway
from .registry import TargetRegistry
from .restore_manager import RestoreManager
from .run_catalog import list_runs, load_run
from .safe_exit_manager import SafeExitManager

__all__ = [
    'ArchiveWriter',
    'BackupManager',
    'SnapshotCollector',
    'ClusterGateway',
    'KubectlGateway',
    'TargetRegistry',
    'RestoreManager',
    'list_runs',
    'load_run',
    'SafeExitManager',
]
