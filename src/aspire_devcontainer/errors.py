"""Exception taxonomy and process exit codes for devcontainer tooling."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes shared by every command."""

    OK = 0
    FAILURE = 1
    MISSING_TOOL = 2


class DevcontainerError(RuntimeError):
    """Base class for actionable devcontainer tooling failures."""

    exit_code: ExitCode = ExitCode.FAILURE


class ConfigError(DevcontainerError):
    """Raised when the tooling configuration file is malformed."""


class EnvFileError(DevcontainerError):
    """Raised when a .env file cannot be read or written."""


class CacheError(DevcontainerError):
    """Raised when a cache entry cannot be staged or committed."""


class PermissionTimeoutError(DevcontainerError):
    """Raised when write access does not appear within the allowed window."""


class MissingToolError(DevcontainerError):
    """Raised when required command-line tools are not on PATH."""

    exit_code = ExitCode.MISSING_TOOL

    def __init__(self, commands: Iterable[str]) -> None:
        self.commands = tuple(commands)
        super().__init__(f"Missing required tools: {' '.join(self.commands)}")


class CommandFailedError(DevcontainerError):
    """Raised when an external command exits non-zero."""

    def __init__(self, cmd: Sequence[str], returncode: int) -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        super().__init__(f"Command failed ({returncode}): {' '.join(self.cmd)}")
