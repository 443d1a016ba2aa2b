"""Lifecycle hooks and operator helpers for the Aspire devcontainer."""

from __future__ import annotations

from .config import DevcontainerConfig, load_config
from .errors import (
    CacheError,
    CommandFailedError,
    ConfigError,
    DevcontainerError,
    EnvFileError,
    ExitCode,
    MissingToolError,
    PermissionTimeoutError,
)
from .report import Check, Report, Status

__all__ = [
    "CacheError",
    "Check",
    "CommandFailedError",
    "ConfigError",
    "DevcontainerConfig",
    "DevcontainerError",
    "EnvFileError",
    "ExitCode",
    "MissingToolError",
    "PermissionTimeoutError",
    "Report",
    "Status",
    "load_config",
]

__version__ = "0.1.0"
