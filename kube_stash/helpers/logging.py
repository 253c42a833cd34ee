################################################################################
# KUBE-STASH
#
# @file:        logging.py
# @module:      kube_stash.helpers.logging
# @description: Central logging setup (Rich console + optional rotating file).
# @author:      Kube-Stash Contributors
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT-Lizenz: siehe LICENSE oder https://opensource.org/licenses/MIT
################################################################################

"""
Logging management for Kube-Stash.

Modules obtain loggers via get_logger(__name__); the CLI calls
log_manager.configure() once at startup.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

from .constants import LOG_FORMAT, LOG_DATE_FORMAT

ROOT_LOGGER_NAME = "kube_stash"


class LogManager:
    """Owns the handlers attached to the kube_stash logger hierarchy."""

    def __init__(self):
        self._handlers = []
        self.level = logging.INFO
        self.log_file: Optional[Path] = None

    def configure(
        self,
        level: Union[str, int] = "INFO",
        log_file: Optional[Union[str, Path]] = None,
        max_size_mb: int = 100,
        backup_count: int = 5,
        console: Optional[Console] = None,
    ) -> None:
        """
        (Re)configure logging.

        Args:
            level: Log level name or number
            log_file: Optional file to log into (rotated)
            max_size_mb: Rotation threshold for the log file
            backup_count: Number of rotated files to keep
            console: Rich console for the terminal handler (stderr by default)
        """
        if isinstance(level, str):
            resolved = logging.getLevelName(level.upper())
            if not isinstance(resolved, int):
                raise ValueError(f"Unknown log level: {level}")
            level = resolved

        root = logging.getLogger(ROOT_LOGGER_NAME)
        for handler in self._handlers:
            root.removeHandler(handler)
            handler.close()
        self._handlers = []

        console_handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        self._add(root, console_handler)

        if log_file:
            path = Path(log_file).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                path,
                maxBytes=max_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
            self._add(root, file_handler)
            self.log_file = path

        root.setLevel(level)
        root.propagate = False
        self.level = level

    def _add(self, root: logging.Logger, handler: logging.Handler) -> None:
        root.addHandler(handler)
        self._handlers.append(handler)


log_manager = LogManager()


def get_logger(name: str) -> logging.Logger:
    """Return a logger below the kube_stash hierarchy."""
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
