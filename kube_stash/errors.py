################################################################################
# KUBE-STASH
#
# @file:        errors.py
# @module:      kube_stash.errors
# @description: Exception taxonomy shared by registry, gateway, writer and restore.
# @author:      Kube-Stash Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
# ==============================================================================
# Hinweise:
# - ConfigError aborts before any cluster call
# - GatewayError carries a kind so callers decide fatal vs. recorded skip
# - ArchiveWriteError is an OSError: local writes failing abort the run
# - PartialFailure is a status value (see types.CaptureStatus), not an exception
################################################################################

from __future__ import annotations

from typing import Optional


class KubeStashError(Exception):
    """Base class for all Kube-Stash errors."""


class ConfigError(KubeStashError):
    """Invalid configuration or target registry."""


class GatewayError(KubeStashError):
    """
    A call to the cluster control plane failed.

    Attributes:
        kind: One of TRANSPORT, AUTH, NOT_FOUND, TIMEOUT, CANCELLED
        cause: Human-readable cause (usually kubectl stderr)
    """

    TRANSPORT = "transport"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    def __init__(self, kind: str, cause: str, command: Optional[str] = None):
        self.kind = kind
        self.cause = cause
        self.command = command
        super().__init__(f"{kind}: {cause}")


class ArchiveWriteError(KubeStashError, OSError):
    """Local archive could not be written; results of the run can't be trusted."""


class RunSealedError(KubeStashError):
    """Attempt to modify a backup run after finalize()."""


class RunFormatError(KubeStashError):
    """A run directory is missing files or its summary fails validation."""
