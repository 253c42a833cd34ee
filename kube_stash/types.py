################################################################################
# KUBE-STASH
#
# @file:        types.py
# @module:      kube_stash.types
# @description: Shared data models for targets, snapshot manifests, runs and restores.
# @author:      Kube-Stash Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - BackupTarget describes one application (namespace + selector + mount)
# - SnapshotManifest is frozen: created once per target per run
# - BackupRun is appended to during a run and sealed by the archive writer
# - RestorePlan / TargetRestoreResult live only for one restore invocation
################################################################################

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple

from .helpers.constants import ARCHIVE_TYPES, DEFAULT_ARCHIVE_TYPE


# ---- Targets ----

@dataclass(frozen=True)
class BackupTarget:
    name: str
    namespace: str
    mount_path: str
    pod_selector: str = ""  # empty = first running pod in namespace
    archive_data_type: str = DEFAULT_ARCHIVE_TYPE  # "tar.gz" | "tar"
    deployment: Optional[str] = None  # defaults to name
    pvc: Optional[str] = None  # claim mounted during restore; discovered if None

    @property
    def deployment_name(self) -> str:
        return self.deployment or self.name

    @property
    def archive_extension(self) -> str:
        return ARCHIVE_TYPES[self.archive_data_type][2]

    @property
    def tar_create_flags(self) -> str:
        return ARCHIVE_TYPES[self.archive_data_type][0]

    @property
    def tar_extract_flags(self) -> str:
        return ARCHIVE_TYPES[self.archive_data_type][1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "mount_path": self.mount_path,
            "pod_selector": self.pod_selector,
            "archive_data_type": self.archive_data_type,
            "deployment": self.deployment,
            "pvc": self.pvc,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BackupTarget:
        return cls(
            name=data["name"],
            namespace=data["namespace"],
            mount_path=data["mount_path"],
            pod_selector=data.get("pod_selector") or "",
            archive_data_type=data.get("archive_data_type") or DEFAULT_ARCHIVE_TYPE,
            deployment=data.get("deployment"),
            pvc=data.get("pvc"),
        )


# ---- Cluster references ----

@dataclass(frozen=True)
class PodRef:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ResourceRef:
    """A resource (or label-selected set of resources) for wait/get calls."""
    kind: str
    namespace: Optional[str] = None
    name: Optional[str] = None
    selector: Optional[str] = None

    def __str__(self) -> str:
        target = self.name or (f"-l {self.selector}" if self.selector else "*")
        return f"{self.kind}/{target} ({self.namespace or 'cluster'})"


# ---- Capture status ----

class CaptureState(str, enum.Enum):
    SUCCESS = "Success"
    PARTIAL_FAILURE = "PartialFailure"
    SKIPPED = "Skipped"


@dataclass(frozen=True)
class CaptureStatus:
    state: CaptureState
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> CaptureStatus:
        return cls(CaptureState.SUCCESS)

    @classmethod
    def skipped(cls, reason: str) -> CaptureStatus:
        return cls(CaptureState.SKIPPED, reason)

    @classmethod
    def partial_failure(cls, reason: str) -> CaptureStatus:
        return cls(CaptureState.PARTIAL_FAILURE, reason)

    @property
    def ok(self) -> bool:
        return self.state is CaptureState.SUCCESS

    def __str__(self) -> str:
        if self.reason is None:
            return self.state.value
        return f'{self.state.value}("{self.reason}")'

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state.value, "reason": self.reason}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CaptureStatus:
        return cls(CaptureState(data["state"]), data.get("reason"))


# ---- Snapshot manifests ----

@dataclass(frozen=True)
class ResourceCapture:
    kind: str
    status: CaptureStatus
    document: Optional[bytes] = None  # raw at-rest representation, never parsed
    file: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "file": self.file, **self.status.to_dict()}


@dataclass(frozen=True)
class ArchiveInfo:
    file: str
    size_bytes: int
    sha256: str

    def to_dict(self) -> Dict[str, Any]:
        return {"file": self.file, "size_bytes": self.size_bytes, "sha256": self.sha256}


@dataclass(frozen=True)
class SnapshotManifest:
    target_name: str
    captured_at: datetime
    status: CaptureStatus
    declarative_resources: Tuple[ResourceCapture, ...] = ()
    data: Optional[ArchiveInfo] = None
    target: Optional[BackupTarget] = None
    pod: Optional[str] = None

    @property
    def data_archive_present(self) -> bool:
        return self.data is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_name": self.target_name,
            "target": self.target.to_dict() if self.target else None,
            "captured_at": self.captured_at.isoformat(),
            "status": self.status.to_dict(),
            "pod": self.pod,
            "resources": [r.to_dict() for r in self.declarative_resources],
            "data_archive_present": self.data_archive_present,
            "data": self.data.to_dict() if self.data else None,
        }


# ---- Runs ----

@dataclass
class BackupRun:
    run_id: str
    directory: Path
    started_at: datetime
    target_order: List[str] = field(default_factory=list)
    manifests: List[SnapshotManifest] = field(default_factory=list)
    cluster_artifacts: Dict[str, str] = field(default_factory=dict)  # name -> relative file
    artifact_errors: Dict[str, str] = field(default_factory=dict)
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    sealed: bool = False

    def ordered_manifests(self) -> List[SnapshotManifest]:
        """Manifests in registry order (completion order may differ)."""
        rank = {name: i for i, name in enumerate(self.target_order)}
        return sorted(self.manifests, key=lambda m: rank.get(m.target_name, len(rank)))

    def manifest_for(self, target_name: str) -> Optional[SnapshotManifest]:
        for m in self.manifests:
            if m.target_name == target_name:
                return m
        return None

    @property
    def success(self) -> bool:
        return all(m.status.ok for m in self.manifests)


# ---- Restore ----

class RestoreState(str, enum.Enum):
    IDLE = "Idle"
    SCALED_DOWN = "ScaledDown"
    TRANSFER_POD_READY = "TransferPodReady"
    DATA_RESTORED = "DataRestored"
    VERIFIED = "Verified"
    SCALED_UP = "ScaledUp"
    DONE = "Done"
    FAILED = "Failed"


RESTORE_PHASES = (
    "scale_down",
    "provision_transfer_pod",
    "stream_data_in",
    "verify",
    "scale_up",
)


@dataclass(frozen=True)
class RestoreStep:
    target: BackupTarget
    archive_path: Optional[Path]
    sha256: Optional[str] = None
    size_bytes: Optional[int] = None
    phases: Tuple[str, ...] = RESTORE_PHASES


@dataclass
class RestorePlan:
    run_id: str
    run_directory: Path
    steps: List[RestoreStep] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)  # target -> why it has nothing to restore


@dataclass
class TargetRestoreResult:
    target_name: str
    state: RestoreState = RestoreState.IDLE
    reason: Optional[str] = None
    transitions: List[RestoreState] = field(default_factory=list)
    original_replicas: Optional[int] = None
    final_replicas: Optional[int] = None
    bytes_streamed: int = 0
    streamed_sha256: Optional[str] = None
    transfer_pod: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.state is RestoreState.DONE

    @property
    def left_scaled_down(self) -> bool:
        return self.state is RestoreState.FAILED and self.final_replicas == 0 and bool(self.original_replicas)

    def __str__(self) -> str:
        if self.state is RestoreState.FAILED:
            return f'Failed("{self.reason}")'
        return self.state.value
