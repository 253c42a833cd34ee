################################################################################
# KUBE-STASH
#
# @file:        __init__.py
# @module:      kube_stash
# @description: Exposes version, logging, and core managers for package consumers.
# @author:      Kube-Stash Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Re-exports StashConfig, BackupManager, RestoreManager and the gateway
# - Sets __version__ from constants.VERSION for tooling introspection
################################################################################

"""
Kube-Stash: backup and restore of application data in a small Kubernetes cluster.

Captures deployment/PVC manifests and a tar archive of each application's
data directory into timestamped run directories, and streams such archives
back into the application's volume.
"""

from .helpers.constants import VERSION

__version__ = VERSION
__author__ = "Kube-Stash Contributors"

from .helpers.logging import get_logger, log_manager
from .helpers.config import StashConfig, create_default_config
from .types import (
    BackupTarget,
    BackupRun,
    CaptureStatus,
    SnapshotManifest,
    RestorePlan,
    RestoreState,
    TargetRestoreResult,
)
from .cores import (
    ArchiveWriter,
    BackupManager,
    ClusterGateway,
    KubectlGateway,
    RestoreManager,
    SnapshotCollector,
    TargetRegistry,
)

__all__ = [
    "VERSION",
    "StashConfig",
    "create_default_config",
    "BackupTarget",
    "BackupRun",
    "CaptureStatus",
    "SnapshotManifest",
    "RestorePlan",
    "RestoreState",
    "TargetRestoreResult",
    "ArchiveWriter",
    "BackupManager",
    "ClusterGateway",
    "KubectlGateway",
    "RestoreManager",
    "SnapshotCollector",
    "TargetRegistry",
    "get_logger",
    "log_manager",
]
