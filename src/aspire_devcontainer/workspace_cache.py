"""Cache volume layout and workspace symlinks."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

from . import console as out
from .config import DevcontainerConfig
from .permissions import chown_tree, lookup_user

logger: Final[logging.Logger] = logging.getLogger(__name__)

CACHE_SUBDIRS: Final[tuple[str, ...]] = ("nuget", "artifacts", ".dotnet")
_UNITS: Final[tuple[str, ...]] = ("B", "K", "M", "G", "T")


def directory_size(path: Path) -> int:
    """Total apparent size in bytes of regular files under ``path``."""
    if not path.exists():
        return 0
    if path.is_file():
        return path.stat().st_size
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            entry = Path(root) / name
            try:
                if not entry.is_symlink():
                    total += entry.stat().st_size
            except OSError:
                continue
    return total


def count_files(path: Path) -> int:
    if not path.is_dir():
        return 0
    return sum(len(files) for _root, _dirs, files in os.walk(path))


def human_size(size: int) -> str:
    value = float(size)
    for unit in _UNITS:
        if value < 1024 or unit == _UNITS[-1]:
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"


@dataclass(frozen=True, slots=True)
class CacheStats:
    nuget_files: int
    sizes: dict[str, int] = field(default_factory=dict)
    linked: tuple[str, ...] = field(default=(), compare=False)


def _best_effort_chown(path: Path, user: str) -> None:
    account = lookup_user(user)
    if account is None:
        return
    try:
        chown_tree(path, account.pw_uid, account.pw_gid)
    except OSError as exc:
        logger.debug("chown -R %s %s failed: %s", user, path, exc)


def _link_dotnet(workspace_dotnet: Path, cache_dotnet: Path) -> bool:
    if workspace_dotnet.is_symlink():
        return False
    if (workspace_dotnet / "sdk").is_dir() or not (cache_dotnet / "sdk").is_dir():
        return False
    out.info("Linking cached .dotnet SDK to workspace...")
    try:
        if workspace_dotnet.is_dir():
            shutil.rmtree(workspace_dotnet)
        workspace_dotnet.symlink_to(cache_dotnet, target_is_directory=True)
    except OSError as exc:
        logger.debug("linking %s -> %s failed: %s", workspace_dotnet, cache_dotnet, exc)
        out.warning("Could not link .dotnet (permissions)")
        return False
    out.success(".dotnet SDK linked from cache")
    return True


def _link_artifacts(link: Path, cache_artifacts: Path) -> bool:
    if link.is_symlink() or not cache_artifacts.is_dir():
        return False
    try:
        link.symlink_to(cache_artifacts, target_is_directory=True)
    except OSError as exc:
        logger.debug("linking %s -> %s failed: %s", link, cache_artifacts, exc)
        out.warning("Could not link artifacts cache (non-critical, workspace may be read-only)")
        return False
    out.info("Linked artifacts cache")
    return True


def collect_stats(cache_root: Path) -> CacheStats:
    sizes = {name: directory_size(cache_root / name) for name in CACHE_SUBDIRS}
    return CacheStats(nuget_files=count_files(cache_root / "nuget"), sizes=sizes)


def init_workspace_cache(cfg: DevcontainerConfig) -> CacheStats:
    """Create cache directories and link them into the workspace.

    Safe to run repeatedly: existing directories and links are left alone.
    """
    cache_root = cfg.paths.cache_root
    workspace = cfg.paths.workspace
    out.info("Initializing workspace cache...")

    for name in CACHE_SUBDIRS:
        (cache_root / name).mkdir(parents=True, exist_ok=True)
    workspace_dotnet = workspace / ".dotnet"
    if not workspace_dotnet.is_symlink():
        workspace_dotnet.mkdir(parents=True, exist_ok=True)

    _best_effort_chown(cache_root, cfg.permissions.user)
    if not workspace_dotnet.is_symlink():
        _best_effort_chown(workspace_dotnet, cfg.permissions.user)

    linked: list[str] = []
    if _link_dotnet(workspace_dotnet, cache_root / ".dotnet"):
        linked.append(".dotnet")
    if _link_artifacts(workspace / "artifacts-cache", cache_root / "artifacts"):
        linked.append("artifacts-cache")

    stats = collect_stats(cache_root)
    out.info(f"NuGet cache contains {stats.nuget_files} packages")
    out.subheader("Cache Statistics")
    for name, size in stats.sizes.items():
        out.plain(f"  {human_size(size):>8}  {cache_root / name}")
    out.success("Cache initialization complete")
    return CacheStats(nuget_files=stats.nuget_files, sizes=stats.sizes, linked=tuple(linked))
