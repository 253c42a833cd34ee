"""
Constants used throughout the Kube-Stash application.

This module defines all constant values used across different modules
to ensure consistency and ease of maintenance.
"""

from pathlib import Path

# Version information
VERSION = "1.0.0"

# Default paths
DEFAULT_CONFIG_PATHS = {
    'root': Path('/etc/kube-stash/config.json'),
    'user': Path.home() / '.config' / 'kube-stash' / 'config.json'
}
DEFAULT_BACKUP_ROOT = './backups'

# Run directory layout
RUN_ID_FORMAT = '%Y%m%d-%H%M%S'
SUMMARY_FILE = 'summary.json'
CLUSTER_ARTIFACT_DIR = 'cluster'
MANIFEST_SUFFIX = '.manifest.json'
CHECKSUM_SUFFIX = '.sha256'
TMP_SUFFIX = '.tmp'
RUN_FORMAT_VERSION = 1

# Archive variants: data type -> (tar create flags, tar extract flags, file extension)
ARCHIVE_TYPES = {
    'tar.gz': ('czf', 'xzf', 'tar.gz'),
    'tar': ('cf', 'xf', 'tar'),
}
DEFAULT_ARCHIVE_TYPE = 'tar.gz'

# Restore
TRANSFER_POD_PREFIX = 'kube-stash-restore-'
TRANSFER_MOUNT_PATH = '/restore'
DEFAULT_TRANSFER_IMAGE = 'busybox:1.36'
PRE_RESTORE_REPLICAS_ANNOTATION = 'kube-stash.io/pre-restore-replicas'
MANAGED_BY_LABEL = 'app.kubernetes.io/managed-by'

# Worker sizing: (max RAM in GB, workers)
RAM_WORKER_THRESHOLDS = [
    (2, 1),    # <= 2GB: 1 worker
    (4, 2),    # <= 4GB: 2 workers
    (8, 3),    # <= 8GB: 3 workers
    (16, 4),   # <= 16GB: 4 workers
    (float('inf'), 5)  # > 16GB: 5 workers
]
MAX_PARALLEL_TARGETS = 5

# Timeouts (in seconds)
REQUEST_TIMEOUT = 60
STREAM_TIMEOUT = 1800
SCALE_TIMEOUT = 180
TRANSFER_POD_TIMEOUT = 120
ROLLOUT_TIMEOUT = 300

# Streaming
CHUNK_SIZE = 1024 * 1024

# Logging
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
