################################################################################
# KUBE-STASH
#
# @file:        archive_writer.py
# @module:      kube_stash.cores.archive_writer
# @description: Persists backup runs: timestamped directory, manifests, checksums.
# @author:      Kube-Stash Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - Every file goes temp -> fsync -> os.replace; no truncated final files
# - Data archives are hashed while they stream in
# - A lock guards the run's manifest list for concurrent captures
# - finalize() sweeps stray *.tmp, writes summary.json and seals the run
################################################################################

"""
Archive writer for Kube-Stash.

Owns everything below <root>/<run_id>/. Any local write failure raises
ArchiveWriteError, which aborts the run.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Set

from ..errors import ArchiveWriteError, RunSealedError
from ..helpers.constants import (
    CHECKSUM_SUFFIX,
    CLUSTER_ARTIFACT_DIR,
    MANIFEST_SUFFIX,
    RUN_FORMAT_VERSION,
    RUN_ID_FORMAT,
    SUMMARY_FILE,
    TMP_SUFFIX,
    VERSION,
)
from ..helpers.logging import get_logger
from ..types import ArchiveInfo, BackupRun, BackupTarget, CaptureState, SnapshotManifest
from .safe_exit_manager import SafeExitManager, TempFileHandler

logger = get_logger(__name__)


def data_file_name(target: BackupTarget) -> str:
    return f"{target.name}-data.{target.archive_extension}"


def resource_file_name(target_name: str, kind: str) -> str:
    return f"{target_name}-{kind}.yaml"


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


class DataStream:
    """
    Write side of one data archive.

    Bytes land in a hidden temp file next to the final name; commit()
    renames it into place, discard() removes it.
    """

    def __init__(self, directory: Path, final_name: str, temp_handler: Optional[TempFileHandler] = None):
        self.final_path = directory / final_name
        try:
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{final_name}.", suffix=TMP_SUFFIX)
        except OSError as e:
            raise ArchiveWriteError(f"Cannot create temp file in {directory}: {e}") from e
        self.temp_path = Path(tmp)
        self._file = os.fdopen(fd, "wb")
        self._hash = hashlib.sha256()
        self._size = 0
        self._temp_handler = temp_handler
        self.closed = False
        if temp_handler is not None:
            temp_handler.register_path(self.temp_path)

    def write(self, data: bytes) -> int:
        try:
            written = self._file.write(data)
        except OSError as e:
            raise ArchiveWriteError(f"Write to {self.temp_path} failed: {e}") from e
        self._hash.update(data)
        self._size += len(data)
        return written

    @property
    def size(self) -> int:
        return self._size

    def commit(self) -> ArchiveInfo:
        """Flush, fsync and atomically publish the archive."""
        try:
            self._file.flush()
            os.fsync(self._file.fileno())
            self._file.close()
            os.replace(self.temp_path, self.final_path)
        except OSError as e:
            self.discard()
            raise ArchiveWriteError(f"Cannot publish {self.final_path}: {e}") from e
        self._finish()
        logger.debug(f"Committed {self.final_path.name} ({self._size} bytes)")
        return ArchiveInfo(file=self.final_path.name, size_bytes=self._size, sha256=self._hash.hexdigest())

    def discard(self) -> None:
        if not self._file.closed:
            self._file.close()
        self.temp_path.unlink(missing_ok=True)
        self._finish()

    def _finish(self) -> None:
        self.closed = True
        if self._temp_handler is not None:
            self._temp_handler.unregister_path(self.temp_path)


class ArchiveWriter:
    """
    Writes BackupRun artifacts below a backup root.

    Args:
        root: Directory receiving one sub-directory per run
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.Lock()
        self._temp_handler = TempFileHandler()
        self._open_runs: Set[str] = set()

    # --------------- run lifecycle ---------------

    def open_run(self, now: Optional[datetime] = None) -> BackupRun:
        """
        Create a fresh timestamped run directory.

        Raises:
            ArchiveWriteError: Directory cannot be created (fatal)
        """
        started = now or datetime.now()
        base_id = started.strftime(RUN_ID_FORMAT)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            run_id = base_id
            suffix = 0
            while True:
                directory = self.root / run_id
                try:
                    directory.mkdir()
                    break
                except FileExistsError:
                    suffix += 1
                    run_id = f"{base_id}-{suffix}"
        except OSError as e:
            raise ArchiveWriteError(f"Cannot create run directory below {self.root}: {e}") from e

        with self._lock:
            if not self._open_runs:
                SafeExitManager.get_instance().register_handler(self._temp_handler)
            self._open_runs.add(run_id)
        logger.info(f"Opened backup run {run_id}", extra={"run_id": run_id, "directory": str(directory)})
        return BackupRun(run_id=run_id, directory=directory, started_at=started)

    def _check_open(self, run: BackupRun) -> None:
        if run.sealed:
            raise RunSealedError(f"Run {run.run_id} is sealed")

    def _atomic_write(self, path: Path, data: bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=TMP_SUFFIX)
        except OSError as e:
            raise ArchiveWriteError(f"Cannot write {path}: {e}") from e
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise ArchiveWriteError(f"Cannot write {path}: {e}") from e

    # --------------- artifacts ---------------

    def write_resource(self, run: BackupRun, target_name: str, kind: str, document: bytes) -> str:
        """Store a raw declarative document; returns its file name."""
        self._check_open(run)
        name = resource_file_name(target_name, kind)
        self._atomic_write(run.directory / name, document)
        return name

    @contextmanager
    def open_data_stream(self, run: BackupRun, target: BackupTarget) -> Iterator[DataStream]:
        """
        Context manager yielding a DataStream for the target's archive.

        The caller must commit() or discard(); leaving the block any other way
        discards the partial file.
        """
        self._check_open(run)
        stream = DataStream(run.directory, data_file_name(target), self._temp_handler)
        try:
            yield stream
        except BaseException:
            if not stream.closed:
                stream.discard()
            raise
        if not stream.closed:
            logger.warning(f"Data stream for {target.name} neither committed nor discarded; discarding")
            stream.discard()

    def write_artifact(self, run: BackupRun, name: str, data: bytes) -> str:
        """Store a cluster-level artifact under cluster/."""
        self._check_open(run)
        relative = f"{CLUSTER_ARTIFACT_DIR}/{name}"
        self._atomic_write(run.directory / relative, data)
        with self._lock:
            run.cluster_artifacts[name] = relative
        return relative

    def record_artifact_error(self, run: BackupRun, name: str, error: str) -> None:
        self._check_open(run)
        with self._lock:
            run.artifact_errors[name] = error

    def write_manifest(self, run: BackupRun, manifest: SnapshotManifest) -> Path:
        """
        Persist a target's manifest and checksum file and append it to the run.

        Re-writing the same target replaces its earlier entry.
        """
        self._check_open(run)
        name = manifest.target_name
        manifest_path = run.directory / f"{name}{MANIFEST_SUFFIX}"
        payload = manifest.to_dict()
        payload["format_version"] = RUN_FORMAT_VERSION
        self._atomic_write(manifest_path, (json.dumps(payload, indent=2) + "\n").encode("utf-8"))

        lines = []
        if manifest.data is not None:
            lines.append(f"{manifest.data.sha256}  {manifest.data.file}")
        for res in manifest.declarative_resources:
            if res.document is not None and res.file:
                lines.append(f"{hashlib.sha256(res.document).hexdigest()}  {res.file}")
        checksum_path = run.directory / f"{name}{CHECKSUM_SUFFIX}"
        self._atomic_write(checksum_path, ("\n".join(lines) + "\n" if lines else "").encode("utf-8"))

        with self._lock:
            run.manifests = [m for m in run.manifests if m.target_name != name]
            run.manifests.append(manifest)
            if name not in run.target_order:
                run.target_order.append(name)

        logger.info(
            f"{name}: {manifest.status}",
            extra={"target": name, "run_id": run.run_id, "state": manifest.status.state.value},
        )
        return manifest_path

    # --------------- sealing ---------------

    def finalize(self, run: BackupRun, cancelled: bool = False) -> Dict[str, Any]:
        """
        Seal the run: remove stray temp files, write summary.json.

        Returns:
            The summary document
        """
        self._check_open(run)
        with self._lock:
            for stray in sorted(run.directory.rglob(f"*{TMP_SUFFIX}")):
                logger.warning(f"Removing incomplete file {stray.name}", extra={"run_id": run.run_id})
                try:
                    stray.unlink()
                except OSError as e:
                    raise ArchiveWriteError(f"Cannot remove incomplete file {stray}: {e}") from e

            run.finished_at = datetime.now()
            run.cancelled = run.cancelled or cancelled
            summary = build_summary(run)
            self._atomic_write(
                run.directory / SUMMARY_FILE, (json.dumps(summary, indent=2) + "\n").encode("utf-8")
            )
            run.sealed = True
        self.release(run)

        logger.info(
            f"Sealed run {run.run_id}: {summary['counts']}",
            extra={"run_id": run.run_id, "success": summary["success"]},
        )
        return summary

    def release(self, run: BackupRun) -> None:
        """Stop tracking a run; the temp-file exit handler goes away with the last open run."""
        with self._lock:
            if run.run_id not in self._open_runs:
                return
            self._open_runs.discard(run.run_id)
            if not self._open_runs:
                SafeExitManager.get_instance().unregister_handler(self._temp_handler)


def build_summary(run: BackupRun) -> Dict[str, Any]:
    counts = {state.value: 0 for state in CaptureState}
    targets = []
    for m in run.ordered_manifests():
        counts[m.status.state.value] += 1
        targets.append({
            "name": m.target_name,
            "status": m.status.to_dict(),
            "captured_at": m.captured_at.isoformat(),
            "manifest": f"{m.target_name}{MANIFEST_SUFFIX}",
            "checksum_file": f"{m.target_name}{CHECKSUM_SUFFIX}",
            "data_file": m.data.file if m.data else None,
            "size_bytes": m.data.size_bytes if m.data else None,
            "sha256": m.data.sha256 if m.data else None,
        })
    return {
        "format_version": RUN_FORMAT_VERSION,
        "tool_version": VERSION,
        "run_id": run.run_id,
        "started_at": run.started_at.isoformat(),
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "cancelled": run.cancelled,
        "success": run.success and not run.cancelled,
        "counts": counts,
        "targets": targets,
        "cluster_artifacts": dict(run.cluster_artifacts),
        "artifact_errors": dict(run.artifact_errors),
    }
