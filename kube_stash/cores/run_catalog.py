"""
Run catalog for Kube-Stash.

Reads sealed runs back from disk. A run directory is self-describing:
summary.json lists the targets and every <target>.manifest.json carries
the target definition and archive checksum, so restore needs nothing but
the directory.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema

from ..errors import RunFormatError
from ..helpers.constants import MANIFEST_SUFFIX, RUN_FORMAT_VERSION, SUMMARY_FILE
from ..helpers.logging import get_logger
from ..types import (
    ArchiveInfo,
    BackupRun,
    BackupTarget,
    CaptureStatus,
    ResourceCapture,
    SnapshotManifest,
)

logger = get_logger(__name__)

_STATUS_SCHEMA = {
    "type": "object",
    "required": ["state"],
    "properties": {
        "state": {"enum": ["Success", "PartialFailure", "Skipped"]},
        "reason": {"type": ["string", "null"]},
    },
}

SUMMARY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["format_version", "run_id", "started_at", "targets"],
    "properties": {
        "format_version": {"type": "integer", "minimum": 1},
        "tool_version": {"type": "string"},
        "run_id": {"type": "string", "minLength": 1},
        "started_at": {"type": "string"},
        "finished_at": {"type": ["string", "null"]},
        "cancelled": {"type": "boolean"},
        "success": {"type": "boolean"},
        "counts": {"type": "object", "additionalProperties": {"type": "integer"}},
        "targets": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "status", "manifest"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "status": _STATUS_SCHEMA,
                    "manifest": {"type": "string"},
                    "data_file": {"type": ["string", "null"]},
                    "size_bytes": {"type": ["integer", "null"], "minimum": 0},
                    "sha256": {"type": ["string", "null"], "pattern": "^[0-9a-f]{64}$"},
                },
            },
        },
        "cluster_artifacts": {"type": "object", "additionalProperties": {"type": "string"}},
        "artifact_errors": {"type": "object", "additionalProperties": {"type": "string"}},
    },
}

MANIFEST_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["target_name", "captured_at", "status"],
    "properties": {
        "target_name": {"type": "string", "minLength": 1},
        "captured_at": {"type": "string"},
        "status": _STATUS_SCHEMA,
        "target": {
            "type": ["object", "null"],
            "required": ["name", "namespace", "mount_path"],
        },
        "resources": {"type": "array"},
        "data": {
            "type": ["object", "null"],
            "required": ["file", "size_bytes", "sha256"],
            "properties": {
                "file": {"type": "string"},
                "size_bytes": {"type": "integer", "minimum": 0},
                "sha256": {"type": "string", "pattern": "^[0-9a-f]{64}$"},
            },
        },
    },
}


@dataclass
class RunEntry:
    """One directory below the backup root, as shown by `kube-stash list`."""

    run_id: str
    directory: Path
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def sealed(self) -> bool:
        return self.summary is not None


def _read_json(path: Path, schema: Dict[str, Any]) -> Dict[str, Any]:
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise RunFormatError(f"{path} is missing") from e
    except (OSError, json.JSONDecodeError) as e:
        raise RunFormatError(f"{path} is unreadable: {e}") from e
    try:
        jsonschema.validate(document, schema)
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise RunFormatError(f"{path}: {location}: {e.message}") from e
    return document


def read_summary(directory: Path) -> Dict[str, Any]:
    """Load and validate a run's summary.json."""
    summary = _read_json(Path(directory) / SUMMARY_FILE, SUMMARY_SCHEMA)
    if summary["format_version"] > RUN_FORMAT_VERSION:
        raise RunFormatError(
            f"{directory}: run format {summary['format_version']} is newer than supported ({RUN_FORMAT_VERSION})"
        )
    return summary


def _manifest_from_dict(data: Dict[str, Any]) -> SnapshotManifest:
    resources = tuple(
        ResourceCapture(
            kind=r["kind"],
            status=CaptureStatus.from_dict(r),
            file=r.get("file"),
        )
        for r in data.get("resources") or []
    )
    archive = data.get("data")
    target = data.get("target")
    return SnapshotManifest(
        target_name=data["target_name"],
        captured_at=datetime.fromisoformat(data["captured_at"]),
        status=CaptureStatus.from_dict(data["status"]),
        declarative_resources=resources,
        data=ArchiveInfo(archive["file"], archive["size_bytes"], archive["sha256"]) if archive else None,
        target=BackupTarget.from_dict(target) if target else None,
        pod=data.get("pod"),
    )


def load_run(directory: Path) -> BackupRun:
    """
    Load a sealed run from its directory.

    Raises:
        RunFormatError: Not a run directory, unsealed, or failing validation
    """
    directory = Path(directory).expanduser()
    if not directory.is_dir():
        raise RunFormatError(f"{directory} is not a directory")

    summary = read_summary(directory)
    manifests: List[SnapshotManifest] = []
    for entry in summary["targets"]:
        manifest_path = directory / entry.get("manifest", f"{entry['name']}{MANIFEST_SUFFIX}")
        data = _read_json(manifest_path, MANIFEST_SCHEMA)
        try:
            manifests.append(_manifest_from_dict(data))
        except (KeyError, ValueError, TypeError) as e:
            raise RunFormatError(f"{manifest_path}: {e}") from e

    try:
        started_at = datetime.fromisoformat(summary["started_at"])
        finished_at = datetime.fromisoformat(summary["finished_at"]) if summary.get("finished_at") else None
    except ValueError as e:
        raise RunFormatError(f"{directory}: bad timestamp: {e}") from e

    run = BackupRun(
        run_id=summary["run_id"],
        directory=directory,
        started_at=started_at,
        target_order=[t["name"] for t in summary["targets"]],
        manifests=manifests,
        cluster_artifacts=dict(summary.get("cluster_artifacts") or {}),
        artifact_errors=dict(summary.get("artifact_errors") or {}),
        finished_at=finished_at,
        cancelled=bool(summary.get("cancelled")),
        sealed=True,
    )
    logger.debug(f"Loaded run {run.run_id} with {len(manifests)} targets", extra={"run_id": run.run_id})
    return run


def list_runs(root: Path) -> List[RunEntry]:
    """All run directories below root, newest first."""
    root = Path(root).expanduser()
    if not root.is_dir():
        return []
    entries = []
    for directory in sorted((p for p in root.iterdir() if p.is_dir()), reverse=True):
        if directory.name.startswith("."):
            continue
        if not (directory / SUMMARY_FILE).exists():
            entries.append(RunEntry(directory.name, directory, error="not sealed"))
            continue
        try:
            entries.append(RunEntry(directory.name, directory, summary=read_summary(directory)))
        except RunFormatError as e:
            entries.append(RunEntry(directory.name, directory, error=str(e)))
    return entries
