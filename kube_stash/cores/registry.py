"""
Target registry for Kube-Stash.

Holds the declarative list of backup targets. Per-application quirks
(selector, mount path, archive type) are data here, never branches in
the collector.
"""

from typing import Iterable, List, Optional, Sequence

from ..errors import ConfigError
from ..helpers.constants import ARCHIVE_TYPES
from ..helpers.logging import get_logger
from ..types import BackupTarget

logger = get_logger(__name__)


class TargetRegistry:
    """Validated, ordered collection of BackupTarget entries."""

    def __init__(self, targets: Iterable[BackupTarget]):
        self._targets: List[BackupTarget] = list(targets)
        self._validate()

    @classmethod
    def from_config(cls, config) -> "TargetRegistry":
        """Build the registry from a StashConfig."""
        return cls(config.backup_targets())

    def _validate(self) -> None:
        seen = set()
        for idx, target in enumerate(self._targets):
            label = target.name or f"#{idx + 1}"
            if not target.name or not target.name.strip():
                raise ConfigError(f"Target {label}: name must not be empty")
            if target.name in seen:
                raise ConfigError(f"Duplicate target name: {target.name}")
            seen.add(target.name)
            if not target.namespace or not target.namespace.strip():
                raise ConfigError(f"Target {label}: namespace must not be empty")
            if not target.mount_path or not target.mount_path.strip():
                raise ConfigError(f"Target {label}: mount_path must not be empty")
            if target.archive_data_type not in ARCHIVE_TYPES:
                raise ConfigError(
                    f"Target {label}: unsupported archive_data_type {target.archive_data_type!r}"
                )
        logger.debug(f"Target registry loaded with {len(self._targets)} targets")

    def list_targets(self, names: Optional[Sequence[str]] = None) -> List[BackupTarget]:
        """
        Return targets in registry order.

        Args:
            names: Optional filter; every name must exist

        Raises:
            ConfigError: A requested name is not registered
        """
        if not names:
            return list(self._targets)
        unknown = [n for n in names if n not in self.names()]
        if unknown:
            raise ConfigError(f"Unknown target(s): {', '.join(unknown)}")
        wanted = set(names)
        return [t for t in self._targets if t.name in wanted]

    def get(self, name: str) -> BackupTarget:
        for target in self._targets:
            if target.name == name:
                return target
        raise ConfigError(f"Unknown target: {name}")

    def names(self) -> List[str]:
        return [t.name for t in self._targets]

    def __len__(self) -> int:
        return len(self._targets)
