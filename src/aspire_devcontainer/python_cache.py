"""File-based caches for the Python toolchain.

Two caches live on named volumes:

* the binaries cache holds one directory per CPython version, copied from
  ``/usr/local/python/<version>`` after a source build;
* the tools cache holds one directory per pipx-installed tool, marked
  complete by an ``.installed`` manifest.

Every copy into or out of a cache is staged in a hidden sibling directory and
renamed into place, so a concurrent reader sees either the previous entry,
no entry, or the complete new one. An interrupted copy leaves only a hidden
staging directory behind, never a half-populated entry.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import Final, Protocol

from . import console as out
from .config import DevcontainerConfig
from .errors import CacheError, CommandFailedError, DevcontainerError
from .gpu import GpuInfo, GpuKind
from .report import Report
from .shell import capture, run, which
from .workspace_cache import directory_size, human_size

logger: Final[logging.Logger] = logging.getLogger(__name__)

CACHE_INFO_FILE: Final[str] = ".cache-info"
TOOL_MARKER_FILE: Final[str] = ".installed"
SECONDS_SAVED_PER_TOOL: Final[int] = 15

VersionProbe = Callable[[Path], "str | None"]


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _manifest(entries: Mapping[str, object]) -> str:
    return "".join(f"{key}={value}\n" for key, value in entries.items())


def _discard(path: Path | None) -> None:
    if path is None:
        return
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.exists():
        shutil.rmtree(path, ignore_errors=True)


def atomic_copytree(src: Path, dst: Path, marker: tuple[str, str] | None = None) -> Path:
    """Copy ``src`` to ``dst`` (dereferencing symlinks) with an atomic commit.

    ``marker`` is an optional ``(file name, content)`` pair written into the
    staged copy before it becomes visible.
    """
    if not src.is_dir():
        raise CacheError(f"Cache source is not a directory: {src}")
    dst.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f".{dst.name}.", suffix=".staging", dir=dst.parent))
    retired: Path | None = None
    try:
        shutil.copytree(
            src,
            staging,
            symlinks=False,
            ignore_dangling_symlinks=True,
            dirs_exist_ok=True,
        )
        shutil.copystat(src, staging)
        if marker is not None:
            name, content = marker
            (staging / name).write_text(content, encoding="utf-8")

        if dst.is_symlink() or dst.is_file():
            dst.unlink()
        elif dst.exists():
            retired = dst.parent / f".{dst.name}.{uuid.uuid4().hex}.retired"
            os.replace(dst, retired)

        try:
            os.replace(staging, dst)
        except OSError as exc:
            if dst.is_dir():
                # Another writer committed a complete copy first.
                logger.debug("concurrent commit won for %s: %s", dst, exc)
                _discard(staging)
            else:
                raise
    except (OSError, shutil.Error) as exc:
        _discard(staging)
        if retired is not None and not dst.exists():
            os.replace(retired, dst)
            retired = None
        raise CacheError(f"Failed to copy {src} -> {dst}: {exc}") from exc
    finally:
        _discard(retired)
    return dst


def atomic_symlink(target: Path, link: Path) -> Path:
    """Point ``link`` at ``target``, replacing whatever was there."""
    link.parent.mkdir(parents=True, exist_ok=True)
    if link.is_dir() and not link.is_symlink():
        shutil.rmtree(link)
    temp_link = link.parent / f".{link.name}.{uuid.uuid4().hex}.tmp"
    temp_link.symlink_to(target, target_is_directory=True)
    try:
        os.replace(temp_link, link)
    except OSError as exc:
        temp_link.unlink(missing_ok=True)
        raise CacheError(f"Failed to link {link} -> {target}: {exc}") from exc
    return link


# ---------------------------------------------------------------------------
# Python binaries
# ---------------------------------------------------------------------------


def probe_python_version(python: Path) -> str | None:
    """Return the version reported by ``python --version``."""
    output = capture([str(python), "--version"])
    if not output:
        return None
    parts = output.split()
    return parts[1] if len(parts) >= 2 else None


@dataclass(frozen=True, slots=True)
class CacheLookup:
    hit: bool
    reason: str
    found_version: str | None = None


class InstallOutcome(StrEnum):
    RESTORED = "restored"
    BUILT = "built"
    NOT_CACHED = "not-cached"


class PythonBinaryCache:
    """Version-checked cache of compiled CPython trees."""

    def __init__(
        self,
        cache_dir: Path,
        install_dir: Path,
        version_probe: VersionProbe = probe_python_version,
    ) -> None:
        self.cache_dir = cache_dir
        self.install_dir = install_dir
        self._probe = version_probe

    def cached_path(self, version: str) -> Path:
        return self.cache_dir / version

    def installed_path(self, version: str) -> Path:
        return self.install_dir / version

    @property
    def current_link(self) -> Path:
        return self.install_dir / "current"

    def lookup(self, version: str) -> CacheLookup:
        cached = self.cached_path(version)
        binary = cached / "bin" / "python3"
        if not cached.is_dir():
            return CacheLookup(False, f"Python {version} not found in cache")
        if not binary.is_file():
            return CacheLookup(False, "Python binary not found in cache")
        found = self._probe(binary)
        if found != version:
            return CacheLookup(
                False,
                f"Cached version mismatch (cached: {found or 'unknown'}, requested: {version})",
                found,
            )
        return CacheLookup(True, f"Python {version} found in cache", found)

    def restore(self, version: str) -> Path:
        target = atomic_copytree(self.cached_path(version), self.installed_path(version))
        atomic_symlink(target, self.current_link)
        return target

    def link_current(self, version: str) -> Path:
        """Point ``current`` straight at the cached tree without copying."""
        return atomic_symlink(self.cached_path(version), self.current_link)

    def store(self, version: str, build_env: Mapping[str, str]) -> Path:
        source = self.installed_path(version)
        if not source.is_dir():
            raise CacheError(f"Python installation not found: {source}")
        manifest = _manifest(
            {
                "VERSION": version,
                "CACHED_DATE": _utc_stamp(),
                "BUILD_FLAGS": f'"{build_env.get("CFLAGS", "")}"',
                "CPU_CORES": build_env.get("MAKEFLAGS", "-j1").removeprefix("-j"),
            }
        )
        return atomic_copytree(source, self.cached_path(version), marker=(CACHE_INFO_FILE, manifest))


def build_environment(cpu_count: int, gpu: GpuInfo) -> dict[str, str]:
    """Compiler settings for a from-source CPython build."""
    env = {
        "MAKEFLAGS": f"-j{cpu_count}",
        "CFLAGS": "-O3 -march=native -mtune=native",
        "CXXFLAGS": "-O3 -march=native -mtune=native",
        "LDFLAGS": "-Wl,-O1 -Wl,--as-needed",
    }
    if gpu.kind is GpuKind.NVIDIA:
        env["CUDA_VISIBLE_DEVICES"] = "0"
    return env


def install_python(
    cache: PythonBinaryCache,
    version: str,
    installer_cmd: Sequence[str] | None,
    gpu: GpuInfo,
    cpu_count: int | None = None,
) -> InstallOutcome:
    """Restore ``version`` from cache, or run the installer and cache its output."""
    out.header("Python Installation Wrapper")
    out.info(f"Version: {version}")

    lookup = cache.lookup(version)
    if lookup.hit:
        cache.restore(version)
        out.success(f"Python {version} restored from cache")
        return InstallOutcome.RESTORED
    out.warning(lookup.reason)

    cores = cpu_count or os.cpu_count() or 1
    build_env = build_environment(cores, gpu)
    out.info(f"CPU cores available: {cores}")
    if gpu.available:
        out.success(f"{gpu.summary} - enabling compiler optimizations")
    for key, value in build_env.items():
        out.plain(f"  {key}={value}")

    if installer_cmd:
        out.info(f"Installing Python {version}...")
        run(installer_cmd, env={**os.environ, **build_env})

    if not cache.installed_path(version).is_dir():
        out.warning("Python installation not found, skipping cache")
        return InstallOutcome.NOT_CACHED

    out.info("Caching Python installation...")
    stored = cache.store(version, build_env)
    out.success(f"Python {version} cached successfully ({human_size(directory_size(stored))})")
    return InstallOutcome.BUILT


# ---------------------------------------------------------------------------
# Python tools
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ToolStatus:
    found: tuple[str, ...]
    missing: tuple[str, ...]

    @property
    def complete(self) -> bool:
        return not self.missing


class ToolsCache:
    """Per-tool cache directories marked complete by ``.installed``."""

    def __init__(self, cache_dir: Path, tools_dir: Path) -> None:
        self.cache_dir = cache_dir
        self.tools_dir = tools_dir

    def is_cached(self, tool: str) -> bool:
        entry = self.cache_dir / tool
        return entry.is_dir() and (entry / TOOL_MARKER_FILE).is_file()

    def restore(self, tool: str) -> Path:
        return atomic_copytree(self.cache_dir / tool, self.tools_dir / tool)

    def store(self, tool: str, source: Path, version: str = "latest") -> Path:
        manifest = _manifest(
            {"TOOL": tool, "VERSION": version, "INSTALLED_DATE": _utc_stamp()}
        )
        return atomic_copytree(source, self.cache_dir / tool, marker=(TOOL_MARKER_FILE, manifest))

    def status(self, tools: Iterable[str]) -> ToolStatus:
        found: list[str] = []
        missing: list[str] = []
        for tool in tools:
            (found if self.is_cached(tool) else missing).append(tool)
        return ToolStatus(tuple(found), tuple(missing))


class ToolInstaller(Protocol):
    def install(self, tool: str) -> Path:
        """Install ``tool`` and return the directory to cache."""
        ...


class PipxInstaller:
    """Installs tools with pipx, bootstrapping pipx itself through pip."""

    def __init__(self, python: str = "python3", log_dir: Path | None = None) -> None:
        self._python = python
        self._log_dir = log_dir or Path(tempfile.gettempdir())

    def _pipx_value(self, name: str) -> Path | None:
        value = capture(["pipx", "environment", "--value", name])
        return Path(value) if value else None

    def _bootstrap(self) -> Path:
        run([self._python, "-m", "pip", "install", "--user", "pipx"])
        local_bin = str(Path.home() / ".local" / "bin")
        if local_bin not in os.environ.get("PATH", "").split(os.pathsep):
            os.environ["PATH"] = os.pathsep.join([local_bin, os.environ.get("PATH", "")])
        run(["pipx", "ensurepath"], allow_failure=True, quiet=True)
        home = self._pipx_value("PIPX_HOME")
        if home is None or not home.is_dir():
            raise CacheError("Could not locate the pipx home directory for caching")
        return home

    def install(self, tool: str) -> Path:
        if tool == "pipx":
            return self._bootstrap()
        if which("pipx") is None:
            raise CacheError("pipx is not available; install it before other tools")
        log_path = self._log_dir / f"pipx-install-{tool}.log"
        with log_path.open("w", encoding="utf-8") as log_file:
            completed = subprocess.run(
                ["pipx", "install", tool],
                stdout=log_file,
                stderr=subprocess.STDOUT,
                check=False,
            )
        if completed.returncode != 0:
            raise CommandFailedError(["pipx", "install", tool], completed.returncode)
        venvs = self._pipx_value("PIPX_LOCAL_VENVS")
        tool_home = venvs / tool if venvs else None
        if tool_home is None or not tool_home.is_dir():
            raise CacheError(f"Could not locate {tool} installation for caching")
        return tool_home


@dataclass
class ToolsRunResult:
    restored: list[str] = field(default_factory=list)
    installed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def seconds_saved(self) -> int:
        return len(self.restored) * SECONDS_SAVED_PER_TOOL


def install_tools(
    tools: Sequence[str],
    cache: ToolsCache,
    installer: ToolInstaller,
    max_parallel: int = 4,
) -> ToolsRunResult:
    """Restore cached tools and install the rest, at most ``max_parallel`` at once.

    A failing installer only marks its own tool as failed.
    """
    result = ToolsRunResult()
    pending: list[str] = []
    cache.tools_dir.mkdir(parents=True, exist_ok=True)

    for tool in tools:
        if not cache.is_cached(tool):
            pending.append(tool)
            continue
        try:
            cache.restore(tool)
        except CacheError as exc:
            logger.warning("restoring %s from cache failed, reinstalling: %s", tool, exc)
            pending.append(tool)
        else:
            result.restored.append(tool)

    def _install_one(tool: str) -> None:
        source = installer.install(tool)
        cache.store(tool, source)
        cache.restore(tool)

    def _record(tool: str, exc: Exception) -> None:
        logger.debug("installing %s failed", tool, exc_info=exc)
        result.failed[tool] = str(exc)
        out.warning(f"Failed to install {tool} (non-fatal): {exc}")

    if "pipx" in pending:
        pending.remove("pipx")
        out.info("Installing pipx (required for other tools)...")
        try:
            _install_one("pipx")
        except (DevcontainerError, OSError) as exc:
            _record("pipx", exc)
        else:
            result.installed.append("pipx")

    if pending:
        with ThreadPoolExecutor(
            max_workers=max(1, max_parallel), thread_name_prefix="tool-installer"
        ) as pool:
            futures = {pool.submit(_install_one, tool): tool for tool in pending}
            for future in as_completed(futures):
                tool = futures[future]
                try:
                    future.result()
                except (DevcontainerError, OSError) as exc:
                    _record(tool, exc)
                else:
                    out.success(f"{tool} installed and cached")
                    result.installed.append(tool)

    result.installed.sort(key=list(tools).index)
    return result


def validate_cache(cfg: DevcontainerConfig, version_probe: VersionProbe = probe_python_version) -> Report:
    report = Report("Python Cache Validation")
    binaries = PythonBinaryCache(cfg.python.cache_dir, cfg.python.install_dir, version_probe)
    lookup = binaries.lookup(cfg.python.version)
    if lookup.hit:
        report.ok("python binaries", f"Python {cfg.python.version} cache valid")
    else:
        report.warning("python binaries", lookup.reason)

    tools = ToolsCache(cfg.tools.cache_dir, cfg.tools.tools_dir).status(cfg.tools.tools)
    total = len(cfg.tools.tools)
    if tools.complete:
        report.ok("python tools", f"All {total} Python tools cached")
    else:
        report.warning(
            "python tools",
            f"Found {len(tools.found)}/{total}, missing: {' '.join(tools.missing)}",
        )

    for label, path in (
        ("binaries cache size", cfg.python.cache_dir),
        ("tools cache size", cfg.tools.cache_dir),
    ):
        if path.is_dir():
            report.info(label, human_size(directory_size(path)))
        else:
            report.info(label, "not initialized")
    return report
