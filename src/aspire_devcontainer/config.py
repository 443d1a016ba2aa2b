"""Devcontainer tooling configuration loader.

Values come from three layers, later layers winning:

1. built-in defaults matching the Aspire devcontainer volume layout,
2. an optional YAML file (``ASPIRE_DEVCONTAINER_CONFIG`` or
   ``<workspace>/.devcontainer/devcontainer-tools.yaml``),
3. environment overrides (``WORKSPACE_FOLDER``, ``PYTHON_CACHE_DIR``,
   ``PYTHON_TOOLS_CACHE_DIR``, ``DEVCONTAINER_LOG_DIR``).
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from functools import lru_cache
from pathlib import Path
from typing import Any, Final, cast

import yaml

from .errors import ConfigError

CONFIG_ENV_VAR: Final[str] = "ASPIRE_DEVCONTAINER_CONFIG"
CONFIG_RELATIVE_PATH: Final[Path] = Path(".devcontainer") / "devcontainer-tools.yaml"

DEFAULT_WORKSPACE: Final[str] = "/workspaces/aspire"
DEFAULT_PYTHON_VERSION: Final[str] = "3.12.11"
DEFAULT_TOOLS: Final[tuple[str, ...]] = (
    "pipx",
    "flake8",
    "autopep8",
    "black",
    "yapf",
    "mypy",
    "pydocstyle",
    "pycodestyle",
    "bandit",
    "pipenv",
    "virtualenv",
    "pytest",
    "pylint",
)
DEFAULT_VOLUMES: Final[tuple[str, ...]] = (
    "aspire-nuget-cache",
    "aspire-build-cache",
    "aspire-dotnet-cache",
    "python-binaries-cache",
    "python-tools-cache",
)


def _as_tuple(values: Sequence[str] | None) -> tuple[str, ...]:
    return tuple(values or ())


@dataclass(frozen=True, slots=True)
class PathsConfig:
    workspace: Path = Path(DEFAULT_WORKSPACE)
    cache_root: Path = Path("/workspace-cache")

    @property
    def env_file(self) -> Path:
        return self.workspace / ".devcontainer" / ".env"

    @property
    def env_example(self) -> Path:
        return self.workspace / ".devcontainer" / ".env.example"

    @property
    def gitignore(self) -> Path:
        return self.workspace / ".gitignore"


@dataclass(frozen=True, slots=True)
class PermissionsConfig:
    user: str = "vscode"
    max_wait: float = 10.0
    interval: float = 1.0
    critical_dirs: tuple[str, ...] = ("artifacts", ".dotnet")
    critical_scripts: tuple[str, ...] = ("eng/common/dotnet-install.sh", "eng/common/tools.sh")
    validated_paths: tuple[str, ...] = ("artifacts", ".dotnet", "eng")


@dataclass(frozen=True, slots=True)
class PythonCacheConfig:
    version: str = DEFAULT_PYTHON_VERSION
    cache_dir: Path = Path("/usr/local/python-cache")
    install_dir: Path = Path("/usr/local/python")


@dataclass(frozen=True, slots=True)
class ToolsConfig:
    cache_dir: Path = Path("/usr/local/py-utils-cache")
    tools_dir: Path = Path("/usr/local/py-utils")
    tools: tuple[str, ...] = DEFAULT_TOOLS
    max_parallel: int = 4


@dataclass(frozen=True, slots=True)
class ContainerConfig:
    log_dir: Path = Path("/tmp/devcontainer-logs")
    label: str = "devcontainer.local_folder"
    image_prefix: str = "vsc-aspire"
    volumes: tuple[str, ...] = DEFAULT_VOLUMES
    python_volumes: tuple[str, ...] = ("python-binaries-cache", "python-tools-cache")


@dataclass(frozen=True, slots=True)
class DevcontainerConfig:
    paths: PathsConfig = PathsConfig()
    permissions: PermissionsConfig = PermissionsConfig()
    python: PythonCacheConfig = PythonCacheConfig()
    tools: ToolsConfig = ToolsConfig()
    container: ContainerConfig = ContainerConfig()

    def with_workspace(self, workspace: Path) -> DevcontainerConfig:
        """Return a copy rooted at ``workspace``."""
        return replace(self, paths=replace(self.paths, workspace=workspace))


def _section(payload: Mapping[str, Any], key: str) -> dict[str, Any]:
    node = payload.get(key) or {}
    if not isinstance(node, dict):
        raise ConfigError(f"Section '{key}' in tooling config must be a mapping.")
    return cast("dict[str, Any]", node)


def _path(raw: Mapping[str, Any], key: str, default: Path) -> Path:
    value = raw.get(key)
    return Path(str(value)) if value else default


def _number(
    raw: Mapping[str, Any],
    section: str,
    key: str,
    default: float,
    convert: Callable[[Any], float] = float,
    minimum: float = 0,
    inclusive: bool = True,
) -> Any:
    value = raw.get(key, default)
    try:
        number = convert(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{section}.{key} must be a number: {value!r}") from exc
    if number < minimum or (not inclusive and number == minimum):
        bound = ">=" if inclusive else ">"
        raise ConfigError(f"{section}.{key} must be {bound} {minimum:g}: {value!r}")
    return number


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"Tooling config root must be a mapping: {path}")
    return cast("dict[str, Any]", payload)


def build_config(payload: Mapping[str, Any], environ: Mapping[str, str]) -> DevcontainerConfig:
    """Combine a parsed YAML payload with environment overrides."""
    defaults = DevcontainerConfig()
    paths = _section(payload, "paths")
    permissions = _section(payload, "permissions")
    python = _section(payload, "python")
    tools = _section(payload, "tools")
    container = _section(payload, "container")

    workspace = environ.get("WORKSPACE_FOLDER") or paths.get("workspace") or DEFAULT_WORKSPACE
    return DevcontainerConfig(
        paths=PathsConfig(
            workspace=Path(str(workspace)),
            cache_root=_path(paths, "cache_root", defaults.paths.cache_root),
        ),
        permissions=PermissionsConfig(
            user=str(permissions.get("user", defaults.permissions.user)),
            max_wait=_number(permissions, "permissions", "max_wait", defaults.permissions.max_wait),
            interval=_number(
                permissions, "permissions", "interval", defaults.permissions.interval, inclusive=False
            ),
            critical_dirs=_as_tuple(permissions.get("critical_dirs"))
            or defaults.permissions.critical_dirs,
            critical_scripts=_as_tuple(permissions.get("critical_scripts"))
            or defaults.permissions.critical_scripts,
            validated_paths=_as_tuple(permissions.get("validated_paths"))
            or defaults.permissions.validated_paths,
        ),
        python=PythonCacheConfig(
            version=str(python.get("version", defaults.python.version)),
            cache_dir=Path(
                environ.get("PYTHON_CACHE_DIR")
                or _path(python, "cache_dir", defaults.python.cache_dir)
            ),
            install_dir=_path(python, "install_dir", defaults.python.install_dir),
        ),
        tools=ToolsConfig(
            cache_dir=Path(
                environ.get("PYTHON_TOOLS_CACHE_DIR")
                or _path(tools, "cache_dir", defaults.tools.cache_dir)
            ),
            tools_dir=_path(tools, "tools_dir", defaults.tools.tools_dir),
            tools=_as_tuple(tools.get("tools")) or defaults.tools.tools,
            max_parallel=_number(
                tools, "tools", "max_parallel", defaults.tools.max_parallel, convert=int, minimum=1
            ),
        ),
        container=ContainerConfig(
            log_dir=Path(
                environ.get("DEVCONTAINER_LOG_DIR")
                or _path(container, "log_dir", defaults.container.log_dir)
            ),
            label=str(container.get("label", defaults.container.label)),
            image_prefix=str(container.get("image_prefix", defaults.container.image_prefix)),
            volumes=_as_tuple(container.get("volumes")) or defaults.container.volumes,
            python_volumes=_as_tuple(container.get("python_volumes"))
            or defaults.container.python_volumes,
        ),
    )


def resolve_config_path(environ: Mapping[str, str]) -> Path | None:
    """Locate the YAML file, if any."""
    explicit = environ.get(CONFIG_ENV_VAR)
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigError(f"{CONFIG_ENV_VAR} points to a missing file: {path}")
        return path
    workspace = Path(environ.get("WORKSPACE_FOLDER") or DEFAULT_WORKSPACE)
    candidate = workspace / CONFIG_RELATIVE_PATH
    return candidate if candidate.is_file() else None


def load_config_from(environ: Mapping[str, str]) -> DevcontainerConfig:
    path = resolve_config_path(environ)
    payload = _load_yaml(path) if path else {}
    return build_config(payload, environ)


@lru_cache(maxsize=1)
def load_config() -> DevcontainerConfig:
    """Load the process-wide configuration once."""
    return load_config_from(os.environ)
