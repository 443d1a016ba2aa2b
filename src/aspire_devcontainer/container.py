"""Operator helpers wrapping the ``devcontainer`` and ``docker`` CLIs."""

from __future__ import annotations

import json
import logging
import os
import pwd
import stat
import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Final, TextIO

import typer
from rich.table import Table

from . import console as out
from . import jsonc
from .config import DevcontainerConfig
from .errors import ExitCode
from .lifecycle import is_executable
from .report import Report
from .shell import capture, first_line, require_commands, run, tail, tee, which
from .workspace_cache import human_size

logger: Final[logging.Logger] = logging.getLogger(__name__)

LOG_PREFIXES: Final[tuple[str, ...]] = ("build", "up", "rebuild")
LIFECYCLE_COMMANDS: Final[tuple[str, ...]] = (
    "initializeCommand",
    "onCreateCommand",
    "updateContentCommand",
    "postCreateCommand",
    "postStartCommand",
    "postAttachCommand",
)
KEY_FILES: Final[tuple[str, ...]] = (
    ".devcontainer/devcontainer.json",
    ".devcontainer/Dockerfile",
    ".devcontainer/.env",
    "global.json",
    "restore.sh",
    "build.sh",
)
REQUIRED_SCRIPTS: Final[tuple[str, ...]] = ("restore.sh", "build.sh")

Confirmer = Callable[[str], bool]


def _timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d-%H%M%S")


def _confirm(question: str) -> bool:
    return typer.confirm(question, default=False)


# ---------------------------------------------------------------------------
# build / rebuild / logs
# ---------------------------------------------------------------------------


def build(
    cfg: DevcontainerConfig,
    no_cache: bool = False,
    rebuild: bool = False,
    stream: TextIO | None = None,
    now: datetime | None = None,
    tail_lines: int = 20,
) -> ExitCode:
    """Run ``devcontainer build`` then ``devcontainer up``, logging both.

    ``rebuild`` implies ``no_cache`` and replaces the existing container.
    """
    require_commands(["devcontainer"])
    workspace = str(cfg.paths.workspace)
    log_dir = cfg.container.log_dir
    stream = stream or sys.stdout
    stamp = _timestamp(now)
    no_cache = no_cache or rebuild
    kind = "rebuild" if rebuild else "build"

    out.header("Rebuilding Devcontainer" if rebuild else "Building Devcontainer")
    build_cmd = ["devcontainer", "build", "--workspace-folder", workspace, "--log-level", "trace"]
    if no_cache:
        build_cmd.append("--no-cache")
    build_log = log_dir / f"{kind}-{stamp}.log"
    out.step(f"Build log: {build_log}")
    if tee(build_cmd, build_log, stream) != 0:
        out.error(f"Devcontainer {kind} failed, see {build_log}")
        return ExitCode.FAILURE

    up_cmd = ["devcontainer", "up", "--workspace-folder", workspace, "--log-level", "trace"]
    if rebuild:
        up_cmd.append("--remove-existing-container")
    up_log = log_dir / f"up-{stamp}.log"
    out.step(f"Up log: {up_log}")
    returncode = tee(up_cmd, up_log, stream)

    out.subheader(f"Last {tail_lines} lines of {up_log.name}")
    for line in tail(up_log, tail_lines):
        out.plain(line)
    if returncode != 0:
        out.error("devcontainer up failed")
        return ExitCode.FAILURE
    out.success("Devcontainer is up")
    return ExitCode.OK


def latest_log(log_dir: Path) -> Path | None:
    candidates = [
        path
        for prefix in LOG_PREFIXES
        for path in log_dir.glob(f"{prefix}-*.log")
        if path.is_file()
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda path: path.stat().st_mtime)


def show_logs(log_dir: Path, lines: int = 50) -> bool:
    log = latest_log(log_dir)
    if log is None:
        out.warning(f"No build logs found in {log_dir}")
        return False
    out.subheader(f"{log.name} (last {lines} lines)")
    for line in tail(log, lines):
        out.plain(line)
    return True


# ---------------------------------------------------------------------------
# inspect / exec / config
# ---------------------------------------------------------------------------


def find_container(cfg: DevcontainerConfig) -> str | None:
    """Return the ID of the running devcontainer for this workspace."""
    label = f"{cfg.container.label}={cfg.paths.workspace}"
    output = capture(["docker", "ps", "--quiet", "--filter", f"label={label}"])
    if not output:
        return None
    return first_line(output)


def _running_container(cfg: DevcontainerConfig) -> str | None:
    require_commands(["docker"])
    container_id = find_container(cfg)
    if container_id is None:
        out.error(f"No running devcontainer found for {cfg.paths.workspace}")
    return container_id


def summarize_container(payload: Mapping[str, Any]) -> list[tuple[str, str]]:
    state = payload.get("State") or {}
    config = payload.get("Config") or {}
    mounts = payload.get("Mounts") or []
    rows = [
        ("ID", str(payload.get("Id", ""))[:12]),
        ("Name", str(payload.get("Name", "")).lstrip("/")),
        ("Image", str(config.get("Image", ""))),
        ("Status", str(state.get("Status", "unknown"))),
        ("Started", str(state.get("StartedAt", ""))),
    ]
    for mount in mounts:
        source = mount.get("Name") or mount.get("Source", "")
        rows.append((f"Mount ({mount.get('Type', '?')})", f"{source} -> {mount.get('Destination', '')}"))
    return rows


def _print_rows(title: str, rows: Iterable[tuple[str, str]]) -> None:
    table = Table(title=title, show_header=False)
    table.add_column("Key", style="bold")
    table.add_column("Value", overflow="fold")
    for key, value in rows:
        table.add_row(key, value)
    out.console.print(table)


def inspect_container(cfg: DevcontainerConfig) -> ExitCode:
    container_id = _running_container(cfg)
    if container_id is None:
        return ExitCode.FAILURE
    raw = capture(["docker", "inspect", "--format", "{{json .}}", container_id])
    if raw is None:
        out.error(f"docker inspect failed for {container_id}")
        return ExitCode.FAILURE
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        logger.debug("unparseable docker inspect output: %s", exc)
        out.error("Could not parse docker inspect output")
        return ExitCode.FAILURE
    _print_rows("Devcontainer", summarize_container(payload))
    return ExitCode.OK


def exec_in_container(cfg: DevcontainerConfig, command: Sequence[str]) -> int:
    container_id = _running_container(cfg)
    if container_id is None:
        return ExitCode.FAILURE
    flags = ["-i", "-t"] if sys.stdin.isatty() else ["-i"]
    cmd = ["docker", "exec", *flags, "-w", str(cfg.paths.workspace), container_id]
    return run([*cmd, *(command or ["bash"])], allow_failure=True)


def _join(value: Any) -> str:
    if isinstance(value, Mapping):
        return ", ".join(f"{key}={item}" for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) if not isinstance(item, Mapping) else _join(item) for item in value)
    return str(value)


def summarize_configuration(config: Mapping[str, Any]) -> list[tuple[str, str]]:
    """Condense a devcontainer configuration into displayable rows."""
    rows = [("Name", str(config.get("name", "(unnamed)")))]
    features = config.get("features") or {}
    rows.append(("Features", ", ".join(features) if features else "none"))
    ports = config.get("forwardPorts") or []
    rows.append(("Forward ports", _join(ports) if ports else "none"))
    requirements = config.get("hostRequirements")
    if requirements:
        rows.append(("Host requirements", _join(requirements)))
    for name in LIFECYCLE_COMMANDS:
        if config.get(name):
            rows.append((name, _join(config[name])))
    mounts = config.get("mounts") or []
    for mount in mounts:
        rows.append(("Mount", _join(mount)))
    return rows


def read_configuration(cfg: DevcontainerConfig) -> dict[str, Any] | None:
    """Merged configuration from the devcontainer CLI, else the raw JSONC file."""
    workspace = cfg.paths.workspace
    if which("devcontainer"):
        raw = capture(
            ["devcontainer", "read-configuration", "--workspace-folder", str(workspace)]
        )
        if raw:
            try:
                payload = json.loads(raw.splitlines()[-1])
            except ValueError as exc:
                logger.debug("unparseable read-configuration output: %s", exc)
            else:
                if isinstance(payload, dict):
                    return payload.get("configuration", payload)
    path = workspace / ".devcontainer" / "devcontainer.json"
    try:
        payload = jsonc.load_path(path)
    except (OSError, ValueError) as exc:
        out.error(f"Cannot read {path}: {exc}")
        return None
    return payload if isinstance(payload, dict) else None


def show_configuration(cfg: DevcontainerConfig) -> ExitCode:
    config = read_configuration(cfg)
    if config is None:
        return ExitCode.FAILURE
    _print_rows("Devcontainer configuration", summarize_configuration(config))
    return ExitCode.OK


# ---------------------------------------------------------------------------
# disk usage and cleanup
# ---------------------------------------------------------------------------


class CleanupAction(StrEnum):
    CONTAINERS = "containers"
    IMAGES = "images"
    BUILD_CACHE = "build-cache"
    VOLUMES = "volumes"
    OLD_IMAGES = "old-images"
    PYTHON_CACHE = "python-cache"
    FULL = "full"
    PRUNE = "prune"
    DETAILS = "details"


DESTRUCTIVE_ACTIONS: Final[frozenset[CleanupAction]] = frozenset(
    {
        CleanupAction.VOLUMES,
        CleanupAction.PYTHON_CACHE,
        CleanupAction.FULL,
        CleanupAction.PRUNE,
    }
)


def disk_usage() -> ExitCode:
    require_commands(["docker"])
    out.subheader("Docker disk usage")
    run(["docker", "system", "df"], allow_failure=True)
    return ExitCode.OK


def stale_images(prefix: str) -> list[str]:
    """Image IDs matching ``prefix`` except the newest one."""
    output = capture(
        ["docker", "images", "--filter", f"reference={prefix}*", "--format", "{{.ID}}"]
    )
    ids = list(dict.fromkeys(line for line in (output or "").splitlines() if line))
    return ids[1:]


def _remove_volumes(names: Iterable[str]) -> None:
    for name in names:
        if run(["docker", "volume", "rm", name], allow_failure=True, quiet=True) == 0:
            out.success(f"Removed volume {name}")
        else:
            out.info(f"Volume {name} not removed (missing or in use)")


def _cleanup_commands(action: CleanupAction) -> list[list[str]]:
    if action is CleanupAction.CONTAINERS:
        return [["docker", "container", "prune", "-f"]]
    if action is CleanupAction.IMAGES:
        return [["docker", "image", "prune", "-f"]]
    if action is CleanupAction.BUILD_CACHE:
        return [["docker", "builder", "prune", "-f"]]
    if action is CleanupAction.FULL:
        return [
            ["docker", "container", "prune", "-f"],
            ["docker", "image", "prune", "-f"],
            ["docker", "builder", "prune", "-f"],
        ]
    if action is CleanupAction.PRUNE:
        return [["docker", "system", "prune", "-a", "-f"]]
    if action is CleanupAction.DETAILS:
        return [["docker", "system", "df", "-v"]]
    return []


def cleanup(
    cfg: DevcontainerConfig,
    action: CleanupAction | None = None,
    assume_yes: bool = False,
    confirm: Confirmer = _confirm,
) -> ExitCode:
    """Show disk usage, or run one cleanup ``action``."""
    if action is None:
        return disk_usage()
    require_commands(["docker"])

    if action in DESTRUCTIVE_ACTIONS and not assume_yes:
        if not confirm(f"Run destructive cleanup '{action.value}'?"):
            out.info("Cleanup cancelled")
            return ExitCode.OK

    if action is CleanupAction.VOLUMES:
        _remove_volumes(cfg.container.volumes)
    elif action is CleanupAction.PYTHON_CACHE:
        _remove_volumes(cfg.container.python_volumes)
    elif action is CleanupAction.OLD_IMAGES:
        stale = stale_images(cfg.container.image_prefix)
        if not stale:
            out.info(f"No old {cfg.container.image_prefix} images to remove")
        else:
            run(["docker", "rmi", *stale], allow_failure=True)
            out.success(f"Removed {len(stale)} old image(s)")
    else:
        for cmd in _cleanup_commands(action):
            run(cmd, allow_failure=True)

    if action is not CleanupAction.DETAILS:
        disk_usage()
    return ExitCode.OK


# ---------------------------------------------------------------------------
# validation
# ---------------------------------------------------------------------------


def _check_jsonc(workspace: Path, path: Path, report: Report, required: bool) -> Any:
    label = path.relative_to(workspace).as_posix()
    if not path.is_file():
        if required:
            report.error(label, "missing")
        return None
    try:
        payload = jsonc.load_path(path)
    except (OSError, jsonc.JsoncError) as exc:
        report.error(label, f"invalid JSONC: {exc}")
        return None
    report.ok(label, "valid JSONC")
    return payload


def _dockerfile_path(devcontainer_dir: Path, config: Any) -> Path:
    build_section = config.get("build") if isinstance(config, dict) else None
    dockerfile = build_section.get("dockerfile") if isinstance(build_section, dict) else None
    return devcontainer_dir / (dockerfile or "Dockerfile")


def _check_script(workspace: Path, path: Path, report: Report) -> None:
    name = path.relative_to(workspace).as_posix()
    if not path.is_file():
        report.error(name, "missing")
    elif is_executable(path):
        report.ok(name, "executable")
    else:
        report.error(name, f"not executable (chmod +x {name})")


def validate_configuration(cfg: DevcontainerConfig, use_cli: bool = True) -> Report:
    """Static checks of the devcontainer setup; errors fail the command."""
    workspace = cfg.paths.workspace
    devcontainer_dir = workspace / ".devcontainer"
    report = Report("Devcontainer Validation")

    if (workspace / "global.json").is_file():
        report.ok("global.json", "present")
    else:
        report.error("global.json", "missing")

    config = _check_jsonc(workspace, devcontainer_dir / "devcontainer.json", report, required=True)
    _check_jsonc(workspace, workspace / ".vscode" / "tasks.json", report, required=False)

    dockerfile = _dockerfile_path(devcontainer_dir, config)
    if dockerfile.is_file():
        if dockerfile.is_relative_to(workspace):
            dockerfile = dockerfile.relative_to(workspace)
        report.ok("Dockerfile", str(dockerfile))
    else:
        report.error("Dockerfile", f"missing: {dockerfile}")

    for name in REQUIRED_SCRIPTS:
        _check_script(workspace, workspace / name, report)
    for script in sorted((devcontainer_dir / "scripts").glob("devcontainer-*.sh")):
        _check_script(workspace, script, report)

    if not use_cli:
        report.skipped("devcontainer CLI", "not checked")
    elif which("devcontainer") is None:
        report.warning("devcontainer CLI", "not installed (npm install -g @devcontainers/cli)")
    elif capture(
        ["devcontainer", "read-configuration", "--workspace-folder", str(workspace)]
    ) is None:
        report.warning("devcontainer CLI", "read-configuration failed")
    else:
        report.ok("devcontainer CLI", "configuration readable")
    return report


@dataclass(frozen=True, slots=True)
class FileAccess:
    path: Path
    exists: bool
    mode: str = ""
    owner: str = ""
    size: int = 0
    readable: bool = False


def _owner(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def probe_file(path: Path) -> FileAccess:
    try:
        info = path.stat()
    except OSError:
        return FileAccess(path, exists=False)
    return FileAccess(
        path,
        exists=True,
        mode=format(stat.S_IMODE(info.st_mode), "o"),
        owner=_owner(info.st_uid),
        size=info.st_size,
        readable=os.access(path, os.R_OK),
    )


def file_access_report(cfg: DevcontainerConfig) -> Report:
    workspace = cfg.paths.workspace
    report = Report("File Access")
    for name in KEY_FILES:
        access = probe_file(workspace / name)
        if not access.exists:
            report.warning(name, "missing")
            continue
        detail = f"mode {access.mode}, owner {access.owner}, {human_size(access.size)}"
        if access.readable:
            report.ok(name, f"{detail}, readable")
        else:
            report.error(name, f"{detail}, not readable")

    devcontainer_json = workspace / ".devcontainer" / "devcontainer.json"
    if devcontainer_json.is_file():
        try:
            config = jsonc.load_path(devcontainer_json)
        except (OSError, jsonc.JsoncError) as exc:
            report.error("devcontainer name", str(exc))
        else:
            name = config.get("name") if isinstance(config, dict) else None
            if name:
                report.ok("devcontainer name", str(name))
            else:
                report.warning("devcontainer name", "no name set")
    return report
