"""Pytest configuration for aspire-devcontainer tests."""

from __future__ import annotations

import os
import pwd
import sys
from pathlib import Path

import pytest

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"

if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from aspire_devcontainer.config import (  # noqa: E402
    ContainerConfig,
    DevcontainerConfig,
    PathsConfig,
    PermissionsConfig,
    PythonCacheConfig,
    ToolsConfig,
    load_config,
)
from aspire_devcontainer.envfile import REQUIRED_KEYS  # noqa: E402

CONFIG_ENV_VARS = (
    "ASPIRE_DEVCONTAINER_CONFIG",
    "WORKSPACE_FOLDER",
    "PYTHON_CACHE_DIR",
    "PYTHON_TOOLS_CACHE_DIR",
    "DEVCONTAINER_LOG_DIR",
)

CURRENT_USER = pwd.getpwuid(os.geteuid()).pw_name


@pytest.fixture(autouse=True)
def _fresh_config():
    load_config.cache_clear()
    yield
    load_config.cache_clear()


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove credentials and tooling overrides from the process environment."""
    for name in (*REQUIRED_KEYS, *CONFIG_ENV_VARS):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A minimal Aspire checkout."""
    root = tmp_path / "aspire"
    (root / ".devcontainer" / "scripts").mkdir(parents=True)
    (root / "eng" / "common").mkdir(parents=True)
    (root / "global.json").write_text('{"sdk": {"version": "10.0.100"}}\n', encoding="utf-8")
    (root / ".gitignore").write_text("bin/\nobj/\n", encoding="utf-8")
    for script in ("restore.sh", "build.sh", "eng/common/tools.sh", "eng/common/dotnet-install.sh"):
        path = root / script
        path.write_text("#!/usr/bin/env bash\n", encoding="utf-8")
        path.chmod(0o755)
    return root


@pytest.fixture
def config(tmp_path: Path, workspace: Path) -> DevcontainerConfig:
    """Configuration with every path inside ``tmp_path``."""
    return DevcontainerConfig(
        paths=PathsConfig(workspace=workspace, cache_root=tmp_path / "workspace-cache"),
        permissions=PermissionsConfig(user=CURRENT_USER, max_wait=3.0, interval=1.0),
        python=PythonCacheConfig(
            version="3.12.11",
            cache_dir=tmp_path / "python-cache",
            install_dir=tmp_path / "python",
        ),
        tools=ToolsConfig(
            cache_dir=tmp_path / "py-utils-cache",
            tools_dir=tmp_path / "py-utils",
            tools=("pipx", "black", "mypy"),
            max_parallel=2,
        ),
        container=ContainerConfig(log_dir=tmp_path / "logs"),
    )
