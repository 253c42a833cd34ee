#!/usr/bin/env python3
################################################################################
# KUBE-STASH
#
# @file:        config.py
# @module:      kube_stash.helpers.config
# @description: Pydantic configuration models, loading and atomic persistence.
# @author:      Kube-Stash Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
################################################################################

"""
Configuration management for Kube-Stash.

Type-safe JSON configuration: cluster access, backup and restore settings,
the target registry and the list of cluster-level artifacts.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .constants import (
    DEFAULT_ARCHIVE_TYPE,
    DEFAULT_BACKUP_ROOT,
    DEFAULT_CONFIG_PATHS,
    DEFAULT_TRANSFER_IMAGE,
    MAX_PARALLEL_TARGETS,
    REQUEST_TIMEOUT,
    ROLLOUT_TIMEOUT,
    SCALE_TIMEOUT,
    STREAM_TIMEOUT,
    TRANSFER_POD_TIMEOUT,
    VERSION,
)
from .logging import get_logger
from ..errors import ConfigError
from ..types import BackupTarget

logger = get_logger(__name__)


class ClusterConfig(BaseModel):
    """How to reach the control plane"""

    kubectl: str = Field(default="kubectl", description="kubectl binary")
    kubeconfig: Optional[Path] = Field(default=None, description="Path to kubeconfig")
    context: Optional[str] = Field(default=None, description="kubeconfig context")
    request_timeout: int = Field(
        default=REQUEST_TIMEOUT, ge=1, description="Timeout for get/scale/apply calls (seconds)"
    )
    stream_timeout: int = Field(
        default=STREAM_TIMEOUT, ge=1, description="Timeout for exec data streams (seconds)"
    )

    @field_validator("kubeconfig", mode="before")
    @classmethod
    def validate_kubeconfig(cls, v: Any) -> Optional[Path]:
        """Convert string to Path"""
        if v in (None, ""):
            return None
        if isinstance(v, str):
            return Path(v).expanduser()
        return v


class BackupConfig(BaseModel):
    """Backup configuration"""

    root: Path = Field(
        default=Path(DEFAULT_BACKUP_ROOT),
        description="Directory receiving one timestamped sub-directory per run"
    )
    parallel_workers: Union[int, Literal["auto"]] = Field(
        default=1,
        description="Targets captured concurrently (auto = sized from CPU/RAM)"
    )
    capture_cluster_artifacts: bool = Field(
        default=True,
        description="Also save Flux/helm/node state with every run"
    )

    @field_validator("root", mode="before")
    @classmethod
    def validate_root(cls, v: Any) -> Path:
        """Convert string to Path"""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @field_validator("parallel_workers")
    @classmethod
    def validate_workers(cls, v: Union[int, str]) -> Union[int, str]:
        """Validate worker count"""
        if v == "auto":
            return v
        if isinstance(v, int):
            if v < 1 or v > MAX_PARALLEL_TARGETS:
                raise ValueError(f"parallel_workers must be between 1 and {MAX_PARALLEL_TARGETS}")
            return v
        raise ValueError("parallel_workers must be 'auto' or an integer")


class RestoreConfig(BaseModel):
    """Restore configuration"""

    transfer_image: str = Field(default=DEFAULT_TRANSFER_IMAGE, description="Image of the transfer pod")
    transfer_pod_timeout: int = Field(default=TRANSFER_POD_TIMEOUT, ge=1)
    scale_timeout: int = Field(default=SCALE_TIMEOUT, ge=1)
    rollout_timeout: int = Field(default=ROLLOUT_TIMEOUT, ge=0, description="0 = don't wait after scale up")
    verify: bool = Field(default=True, description="Compare streamed checksum against the manifest")


class LoggingConfig(BaseModel):
    """Logging configuration"""

    level: str = Field(default="INFO")
    file: Optional[Path] = Field(default=None)
    max_size_mb: int = Field(default=100, ge=1)
    backup_count: int = Field(default=5, ge=0)

    @field_validator("file", mode="before")
    @classmethod
    def validate_file(cls, v: Any) -> Optional[Path]:
        if v in (None, ""):
            return None
        if isinstance(v, str):
            return Path(v).expanduser()
        return v


class TargetConfig(BaseModel):
    """One backup target (application)"""

    name: str
    namespace: str
    mount_path: str
    pod_selector: str = Field(default="", description="Label selector; empty = first pod in namespace")
    archive_data_type: Literal["tar.gz", "tar"] = DEFAULT_ARCHIVE_TYPE
    deployment: Optional[str] = None
    pvc: Optional[str] = None

    def to_target(self) -> BackupTarget:
        return BackupTarget(
            name=self.name,
            namespace=self.namespace,
            mount_path=self.mount_path,
            pod_selector=self.pod_selector,
            archive_data_type=self.archive_data_type,
            deployment=self.deployment,
            pvc=self.pvc,
        )


class ClusterArtifactConfig(BaseModel):
    """Cluster-level resource saved informationally with each run"""

    name: str = Field(..., description="File name inside the run's cluster/ directory")
    kind: str = Field(..., description="Resource kind, or 'top-nodes' for metrics text")
    namespace: Optional[str] = None
    resource_name: Optional[str] = None
    all_namespaces: bool = False
    fallback_text: Optional[str] = Field(
        default=None,
        description="Written instead when the call fails (error is still recorded)"
    )

    @model_validator(mode="after")
    def validate_scope(self) -> ClusterArtifactConfig:
        if self.all_namespaces and self.namespace:
            raise ValueError(f"artifact {self.name}: namespace and all_namespaces are exclusive")
        return self


def default_cluster_artifacts() -> List[ClusterArtifactConfig]:
    return [
        ClusterArtifactConfig(name="flux-gitrepo.yaml", kind="gitrepository", namespace="flux-system"),
        ClusterArtifactConfig(name="flux-kustomizations.yaml", kind="kustomization", namespace="flux-system"),
        ClusterArtifactConfig(name="helmreleases.yaml", kind="helmrelease", all_namespaces=True),
        ClusterArtifactConfig(
            name="sops-age-secret.yaml", kind="secret", namespace="flux-system", resource_name="sops-age"
        ),
        ClusterArtifactConfig(name="nodes.yaml", kind="nodes"),
        ClusterArtifactConfig(
            name="node-resources.txt", kind="top-nodes", fallback_text="metrics-server not available\n"
        ),
        ClusterArtifactConfig(name="all-pvcs.yaml", kind="pvc", all_namespaces=True),
    ]


class StashConfig(BaseModel):
    """Main Kube-Stash configuration"""

    version: str = Field(default=VERSION, description="Config file version")
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    restore: RestoreConfig = Field(default_factory=RestoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    targets: List[TargetConfig] = Field(default_factory=list)
    cluster_artifacts: List[ClusterArtifactConfig] = Field(default_factory=default_cluster_artifacts)

    def backup_targets(self) -> List[BackupTarget]:
        return [t.to_target() for t in self.targets]

    def save(self, path: Path) -> None:
        """Save configuration to JSON file atomically with 0600 permissions."""
        path = Path(path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(
            dir=path.parent, prefix=".kube-stash-config-", suffix=".tmp"
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                f.write(self.model_dump_json(indent=2, exclude_none=True))
                f.write("\n")
            os.replace(temp_path, path)
            os.chmod(path, 0o600)
            logger.info(f"Configuration saved to {path}")
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    @classmethod
    def load(cls, path: Path) -> StashConfig:
        """
        Load and validate configuration from JSON file.

        Raises:
            ConfigError: File missing, not JSON, or failing validation
        """
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        try:
            raw = path.read_text(encoding="utf-8")
            cfg = cls.model_validate(json.loads(raw))
        except json.JSONDecodeError as e:
            raise ConfigError(f"{path}: invalid JSON: {e}") from e
        except ValidationError as e:
            raise ConfigError(f"{path}: {_format_validation_error(e)}") from e
        logger.debug(f"Configuration loaded from {path}")
        return cfg

    @classmethod
    def get_default_path(cls) -> Path:
        """Get default configuration path (user file first, /etc for root)"""
        user_path = DEFAULT_CONFIG_PATHS["user"]
        root_path = DEFAULT_CONFIG_PATHS["root"]
        if user_path.exists():
            return user_path
        if os.geteuid() == 0 or root_path.exists():
            return root_path
        return user_path


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def default_config() -> StashConfig:
    """Default configuration covering the homelab apps of the old backup script."""
    return StashConfig(
        targets=[
            TargetConfig(
                name="linkding",
                namespace="linkding",
                pod_selector="app=linkding",
                mount_path="/etc/linkding/data",
            ),
            TargetConfig(
                name="mealie",
                namespace="mealie",
                mount_path="/app/data",
            ),
            TargetConfig(
                name="homarr",
                namespace="homarr",
                pod_selector="app.kubernetes.io/name=homarr",
                mount_path="/appdata",
            ),
        ]
    )


def create_default_config(path: Optional[Path] = None, force: bool = False) -> Path:
    """
    Write the default configuration.

    Args:
        path: Target file (default location if None)
        force: Overwrite an existing file

    Returns:
        Path to the config file
    """
    path = Path(path).expanduser() if path else StashConfig.get_default_path()
    if path.exists() and not force:
        logger.warning(f"Configuration file already exists at {path}")
        return path
    default_config().save(path)
    return path


