"""Workspace ownership fixups and the bounded write-access poll.

Bind mounts from WSL2 or macOS hosts frequently reject ``chown``; in that
case the tree is made world-writable instead. The poll afterwards is a plain
fixed-interval loop bounded by ``max_wait`` seconds.
"""

from __future__ import annotations

import logging
import os
import pwd
import stat
import subprocess
import time
from collections.abc import Callable, Iterator
from enum import IntEnum
from pathlib import Path
from typing import Final

from . import console as out
from .config import PermissionsConfig
from .report import Report

logger: Final[logging.Logger] = logging.getLogger(__name__)

Sleeper = Callable[[float], None]


class PermissionOutcome(IntEnum):
    """Result of :func:`ensure_permissions`; values mirror shell exit codes."""

    SUCCESS = 0
    TIMEOUT = 1
    ERROR = 2


def lookup_user(user: str | None) -> pwd.struct_passwd | None:
    if not user:
        return None
    try:
        return pwd.getpwnam(user)
    except KeyError:
        return None


def _walk(path: Path) -> Iterator[Path]:
    yield path
    if path.is_dir() and not path.is_symlink():
        for root, dirs, files in os.walk(path):
            for name in dirs + files:
                yield Path(root) / name


def chown_tree(path: Path, uid: int, gid: int) -> None:
    for entry in _walk(path):
        os.chown(entry, uid, gid, follow_symlinks=False)


def _make_world_writable(path: Path) -> None:
    write_bits = stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH
    for entry in _walk(path):
        if entry.is_symlink():
            continue
        mode = entry.stat().st_mode
        os.chmod(entry, stat.S_IMODE(mode) | write_bits)


def fix_permissions(path: Path, user: str | None) -> bool:
    """Chown ``path`` to ``user`` recursively, falling back to ``a+w``."""
    account = lookup_user(user)
    if account is not None:
        try:
            chown_tree(path, account.pw_uid, account.pw_gid)
        except OSError as exc:
            logger.debug("chown -R %s %s failed: %s", user, path, exc)
        else:
            logger.debug("changed ownership of %s to %s", path, user)
            return True
    try:
        _make_world_writable(path)
    except OSError as exc:
        logger.debug("chmod -R a+w %s failed: %s", path, exc)
        return False
    logger.debug("made %s world-writable", path)
    return True


def is_writable(path: Path, user: str | None) -> bool:
    """Check write access for ``user`` (via sudo) or for the current process."""
    account = lookup_user(user)
    if account is not None and account.pw_uid != os.geteuid():
        try:
            completed = subprocess.run(
                ["sudo", "-n", "-u", account.pw_name, "test", "-w", str(path)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except FileNotFoundError:
            logger.debug("sudo unavailable; falling back to os.access for %s", path)
        else:
            return completed.returncode == 0
    return os.access(path, os.W_OK)


def wait_for_write_access(
    path: Path,
    user: str | None,
    max_wait: float,
    interval: float = 1.0,
    sleep: Sleeper = time.sleep,
) -> bool:
    """Fix permissions and poll until ``path`` is writable or ``max_wait`` elapses."""
    if interval <= 0:
        raise ValueError(f"interval must be positive, got {interval!r}")
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.debug("mkdir %s failed: %s", path, exc)

    if fix_permissions(path, user) and is_writable(path, user):
        out.success(f"Write access verified: {path}")
        return True

    waited = 0.0
    while waited < max_wait:
        sleep(interval)
        waited += interval
        if not fix_permissions(path, user):
            continue
        if is_writable(path, user):
            out.success(f"Write access verified: {path}")
            return True

    out.warning(f"Timeout after {max_wait:g}s waiting for: {path}")
    return False


def ensure_permissions(
    workspace: Path,
    cfg: PermissionsConfig,
    max_wait: float | None = None,
    sleep: Sleeper = time.sleep,
) -> PermissionOutcome:
    out.step(f"Ensuring permissions for: {workspace}")
    if not workspace.is_dir():
        out.error(f"Workspace not found: {workspace}")
        return PermissionOutcome.ERROR

    if fix_permissions(workspace, cfg.user):
        out.success(f"Permissions adjusted: {workspace}")
    else:
        out.warning("Could not run chown (may already have correct permissions)")

    for relative in cfg.critical_scripts:
        script = workspace / relative
        if script.is_file():
            try:
                mode = script.stat().st_mode
                os.chmod(script, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            except OSError as exc:
                logger.debug("chmod +x %s failed: %s", script, exc)

    limit = cfg.max_wait if max_wait is None else max_wait
    for relative in cfg.critical_dirs:
        target = workspace / relative
        if not wait_for_write_access(target, cfg.user, limit, cfg.interval, sleep):
            out.error(f"Timeout waiting for write access: {target}")
            return PermissionOutcome.TIMEOUT

    out.success("Permissions verified")
    return PermissionOutcome.SUCCESS


def validate_permissions(workspace: Path, cfg: PermissionsConfig, report: Report) -> Report:
    for relative in cfg.validated_paths:
        target = workspace / relative
        if not target.exists():
            report.warning(str(target), "path does not exist")
        elif os.access(target, os.W_OK):
            report.ok(str(target), "write access")
        else:
            report.error(str(target), "no write access")
    return report
