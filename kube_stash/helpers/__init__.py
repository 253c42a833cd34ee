"""Helper modules and utilities for Kube-Stash."""

from .constants import VERSION, DEFAULT_CONFIG_PATHS
from .logging import get_logger, log_manager

__all__ = [
    'VERSION',
    'DEFAULT_CONFIG_PATHS',
    'get_logger',
    'log_manager',
]
