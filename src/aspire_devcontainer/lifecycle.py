"""Devcontainer lifecycle hooks.

``init-env`` and ``post-create`` run inside ``initializeCommand`` /
``postCreateCommand`` and must never block container creation: problems are
collected in a :class:`~aspire_devcontainer.report.Report` and the hooks
still exit 0.
"""

from __future__ import annotations

import logging
import os
import stat
import time
from collections.abc import Iterable, Mapping, MutableMapping
from pathlib import Path
from typing import Final

from . import console as out
from . import envfile, jsonc
from .config import DevcontainerConfig
from .errors import DevcontainerError, ExitCode, PermissionTimeoutError
from .gpu import GpuInfo, detect_gpu
from .permissions import PermissionOutcome, Sleeper, ensure_permissions, validate_permissions
from .python_cache import (
    SECONDS_SAVED_PER_TOOL,
    PythonBinaryCache,
    ToolsCache,
    VersionProbe,
    probe_python_version,
)
from .report import Report
from .shell import capture, first_line
from .workspace_cache import CACHE_SUBDIRS, CacheStats, directory_size, human_size, init_workspace_cache

logger: Final[logging.Logger] = logging.getLogger(__name__)

EXECUTABLE_BITS: Final[int] = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
ROOT_SCRIPTS: Final[tuple[str, ...]] = ("restore.sh", "build.sh")
CRITICAL_FILES: Final[tuple[str, ...]] = (
    "global.json",
    "restore.sh",
    "build.sh",
    "eng/common/tools.sh",
)
DOTNET_ENV_VARS: Final[tuple[str, ...]] = (
    "DOTNET_ROOT",
    "NUGET_PACKAGES",
    "DOTNET_CLI_TELEMETRY_OPTOUT",
)


def is_executable(path: Path) -> bool:
    return path.is_file() and bool(path.stat().st_mode & stat.S_IXUSR)


def make_executable(path: Path) -> bool:
    try:
        os.chmod(path, path.stat().st_mode | EXECUTABLE_BITS)
    except OSError as exc:
        logger.debug("chmod +x %s failed: %s", path, exc)
        return False
    return True


def devcontainer_scripts(workspace: Path) -> list[Path]:
    root = workspace / ".devcontainer"
    if not root.is_dir():
        return []
    return sorted(path for path in root.rglob("*.sh") if path.is_file())


def make_scripts_executable(workspace: Path) -> list[Path]:
    """Mark every ``.devcontainer`` shell script executable; return the changed ones."""
    changed: list[Path] = []
    for script in devcontainer_scripts(workspace):
        if is_executable(script):
            continue
        if make_executable(script):
            changed.append(script)
            logger.debug("made %s executable", script)
    return changed


# ---------------------------------------------------------------------------
# init-permissions / init-cache
# ---------------------------------------------------------------------------


def init_permissions(
    cfg: DevcontainerConfig,
    max_wait: float | None = None,
    sleep: Sleeper = time.sleep,
    strict: bool = False,
) -> ExitCode:
    """Run the ownership fixup; a timeout only fails when ``strict``."""
    out.header("Workspace Permissions")
    outcome = ensure_permissions(cfg.paths.workspace, cfg.permissions, max_wait, sleep)
    if outcome is PermissionOutcome.TIMEOUT:
        if strict:
            limit = cfg.permissions.max_wait if max_wait is None else max_wait
            raise PermissionTimeoutError(
                f"No write access under {cfg.paths.workspace} after {limit:g}s"
            )
        out.warning("Continuing without confirmed write access; builds may fail")
        return ExitCode.OK
    if outcome is PermissionOutcome.ERROR:
        return ExitCode.FAILURE
    return ExitCode.OK


def init_cache(cfg: DevcontainerConfig) -> CacheStats:
    out.header("Workspace Cache")
    return init_workspace_cache(cfg)


# ---------------------------------------------------------------------------
# init-python-cache
# ---------------------------------------------------------------------------


def build_time_estimate(binary_hit: bool, tools_complete: bool, gpu: GpuInfo) -> str:
    if binary_hit and tools_complete:
        return "under 1 minute (everything cached)"
    if binary_hit:
        return "2-4 minutes (Python tools will be installed)"
    return "5-8 minutes (optimized source build)" if gpu.available else "10-15 minutes"


def init_python_cache(
    cfg: DevcontainerConfig,
    gpu: GpuInfo | None = None,
    version_probe: VersionProbe = probe_python_version,
) -> Report:
    out.header("Python Cache Initialization")
    report = Report("Python Cache")
    gpu = gpu or detect_gpu()
    report.info("gpu", gpu.summary)

    version = cfg.python.version
    binaries = PythonBinaryCache(cfg.python.cache_dir, cfg.python.install_dir, version_probe)
    lookup = binaries.lookup(version)
    if lookup.hit:
        try:
            binaries.link_current(version)
        except (DevcontainerError, OSError) as exc:
            report.warning("python binaries", f"cached but could not link current: {exc}")
        else:
            report.ok("python binaries", f"Python {version} available from cache")
    else:
        report.warning("python binaries", f"{lookup.reason}; it will be built on first install")

    tools_cache = ToolsCache(cfg.tools.cache_dir, cfg.tools.tools_dir)
    status = tools_cache.status(cfg.tools.tools)
    if status.complete:
        restored = 0
        for tool in status.found:
            try:
                tools_cache.restore(tool)
            except DevcontainerError as exc:
                report.warning(f"tool {tool}", str(exc))
            else:
                restored += 1
        report.ok(
            "python tools",
            f"Restored {restored} tools from cache (~{restored * SECONDS_SAVED_PER_TOOL}s saved)",
        )
    else:
        report.warning(
            "python tools",
            f"{len(status.found)}/{len(cfg.tools.tools)} cached, missing: {' '.join(status.missing)}",
        )

    for label, path in (
        ("binaries cache size", cfg.python.cache_dir),
        ("tools cache size", cfg.tools.cache_dir),
    ):
        report.info(label, human_size(directory_size(path)) if path.is_dir() else "empty")

    report.info("estimated setup time", build_time_estimate(lookup.hit, status.complete, gpu))
    return report


# ---------------------------------------------------------------------------
# init-env
# ---------------------------------------------------------------------------


def _prepare_env_file(cfg: DevcontainerConfig, report: Report) -> None:
    env_file = cfg.paths.env_file
    if env_file.is_file():
        report.ok("env file", f"{env_file} exists")
        return
    example = cfg.paths.env_example
    if example.is_file():
        envfile.write_secure_text(env_file, example.read_text(encoding="utf-8"))
        report.info("env file", f"created from {example.name}")
    else:
        envfile.write_secure_text(env_file, envfile.PLACEHOLDER)
        report.warning("env file", "created placeholder; run setup-env to configure")


def _load_env(
    cfg: DevcontainerConfig, report: Report, environ: MutableMapping[str, str] | None
) -> None:
    values = envfile.read_env_file(cfg.paths.env_file)
    envfile.export_to_environ(values, environ)
    missing = [key for key in envfile.REQUIRED_KEYS if not values.get(key)]
    if missing:
        report.warning("variables", f"not set: {', '.join(missing)}")
    else:
        report.ok("variables", f"all {len(envfile.REQUIRED_KEYS)} loaded")


def _protect_env_file(cfg: DevcontainerConfig, report: Report) -> None:
    env_file = cfg.paths.env_file
    if envfile.ensure_gitignore(env_file, cfg.paths.gitignore, cfg.paths.workspace):
        report.ok("gitignore", f"{env_file.name} is ignored")
    else:
        report.warning("gitignore", f"{env_file.name} is not protected by .gitignore")


def init_env(cfg: DevcontainerConfig, environ: MutableMapping[str, str] | None = None) -> Report:
    """Prepare ``.devcontainer/.env``; never raises."""
    out.header("Environment Initialization")
    report = Report("Environment")
    workspace = cfg.paths.workspace
    env_file = cfg.paths.env_file

    changed = make_scripts_executable(workspace)
    report.info("scripts", f"{len(changed)} script(s) made executable")

    steps = (
        ("env file", lambda: _prepare_env_file(cfg, report)),
        ("gitignore", lambda: _protect_env_file(cfg, report)),
        ("permissions", lambda: envfile.set_secure_permissions(env_file)),
        ("ownership", lambda: envfile.set_container_ownership(env_file)),
        ("variables", lambda: _load_env(cfg, report, environ)),
    )
    for name, action in steps:
        try:
            action()
        except (DevcontainerError, OSError) as exc:
            logger.debug("init-env step %s failed", name, exc_info=exc)
            report.warning(name, str(exc))
    return report


# ---------------------------------------------------------------------------
# post-create validation
# ---------------------------------------------------------------------------


def required_sdk_version(global_json: Path) -> str | None:
    """The ``sdk.version`` pinned by ``global.json``."""
    try:
        payload = jsonc.load_path(global_json)
    except (OSError, ValueError) as exc:
        logger.debug("reading %s failed: %s", global_json, exc)
        return None
    sdk = payload.get("sdk") if isinstance(payload, dict) else None
    version = sdk.get("version") if isinstance(sdk, dict) else None
    return str(version) if version else None


def _check_sdk(workspace: Path, report: Report) -> None:
    installed = capture(["dotnet", "--version"])
    required = required_sdk_version(workspace / "global.json")
    if installed is None:
        report.warning(".NET SDK", "dotnet not found on PATH")
    elif required is None:
        report.warning(".NET SDK", f"{first_line(installed)} installed, global.json unreadable")
    elif first_line(installed) == required:
        report.ok(".NET SDK", f"{required} matches global.json")
    else:
        report.warning(".NET SDK", f"{first_line(installed)} installed, global.json requires {required}")


def _check_files(workspace: Path, names: Iterable[str], report: Report) -> None:
    for name in names:
        path = workspace / name
        if path.exists():
            report.ok(name, "present")
        else:
            report.warning(name, "missing")


def _check_executables(workspace: Path, names: Iterable[str], report: Report) -> None:
    for name in names:
        path = workspace / name
        if not path.is_file():
            continue
        if is_executable(path):
            report.ok(f"{name} executable")
        else:
            report.warning(f"{name} executable", f"run: chmod +x {name}")


def _check_nuget_volume(cache_root: Path, report: Report) -> None:
    nuget = cache_root / "nuget"
    if not nuget.is_dir():
        report.warning("NuGet volume", f"{nuget} does not exist")
    elif os.path.ismount(cache_root) or os.path.ismount(nuget):
        report.ok("NuGet volume", f"mounted at {nuget}")
    else:
        report.warning("NuGet volume", f"{nuget} is not a mount point; packages will not persist")


def _check_environment(environ: Mapping[str, str], report: Report) -> None:
    for name in DOTNET_ENV_VARS:
        value = environ.get(name)
        if value:
            report.ok(name, value)
        else:
            report.warning(name, "not set")


def post_create_validation(
    cfg: DevcontainerConfig, environ: Mapping[str, str] | None = None
) -> Report:
    """Collect post-create diagnostics; the caller always exits 0."""
    out.header("Post-Create Validation")
    environ = os.environ if environ is None else environ
    workspace = cfg.paths.workspace
    report = Report("Post-Create Validation")

    checks = (
        lambda: _check_sdk(workspace, report),
        lambda: validate_permissions(workspace, cfg.permissions, report),
        lambda: _check_files(workspace, CRITICAL_FILES, report),
        lambda: _check_executables(
            workspace, ROOT_SCRIPTS + cfg.permissions.critical_scripts, report
        ),
        lambda: _check_nuget_volume(cfg.paths.cache_root, report),
        lambda: _check_environment(environ, report),
    )
    for check in checks:
        try:
            check()
        except OSError as exc:
            logger.debug("post-create check failed", exc_info=exc)
            report.warning("check", str(exc))

    for name in CACHE_SUBDIRS:
        path = cfg.paths.cache_root / name
        if path.is_dir():
            report.info(f"cache {name}", human_size(directory_size(path)))
    return report


# ---------------------------------------------------------------------------
# quick start
# ---------------------------------------------------------------------------

QUICK_START_STEPS: Final[tuple[tuple[str, str], ...]] = (
    ("Configure credentials", "aspire-devcontainer setup-env"),
    ("Verify credentials", "aspire-devcontainer verify-env"),
    ("Validate configuration", "aspire-devcontainer container validate"),
    ("Build the container", "aspire-devcontainer container build"),
    ("Check caches", "aspire-devcontainer validate-cache"),
)


def quick_start(cfg: DevcontainerConfig) -> None:
    out.header("Aspire Devcontainer Quick Start")
    env_file = cfg.paths.env_file
    if env_file.is_file():
        values = envfile.parse_env_text(env_file.read_text(encoding="utf-8"))
        configured = sum(1 for key in envfile.REQUIRED_KEYS if values.get(key))
        out.info(f"{env_file}: {configured}/{len(envfile.REQUIRED_KEYS)} variables set")
    else:
        out.warning(f"{env_file} not found")

    out.subheader("Steps")
    for number, (title, command) in enumerate(QUICK_START_STEPS, start=1):
        out.plain(f"  {number}. {title}")
        out.plain(f"     $ {command}")

    out.subheader("Troubleshooting")
    out.plain("  Build logs:    aspire-devcontainer container logs")
    out.plain("  File access:   aspire-devcontainer container test-file-access")
    out.plain("  Disk space:    aspire-devcontainer container cleanup details")
