"""Reading and writing the devcontainer ``.env`` secrets file.

The file holds ``KEY=value`` lines. Reading tolerates comments, blank lines,
an ``export`` prefix and one layer of matching quotes; writing always
double-quotes values. Writes go through a temporary sibling created with mode
600 which is then renamed over the target, so the secrets are never visible
with broader permissions or half-written.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
import stat
import tempfile
from collections.abc import Iterable, Mapping, MutableMapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Final

from . import console as out
from .errors import EnvFileError

logger: Final[logging.Logger] = logging.getLogger(__name__)

REQUIRED_KEYS: Final[tuple[str, ...]] = (
    "GH_PAT",
    "GITHUB_OWNER",
    "GITHUB_RUNNER_TOKEN",
    "DOCKER_ACCESS_TOKEN",
    "DOCKER_USERNAME",
)
SECRET_KEYS: Final[frozenset[str]] = frozenset(
    {"GH_PAT", "GITHUB_RUNNER_TOKEN", "DOCKER_ACCESS_TOKEN"}
)
SECURE_MODE: Final[int] = 0o600

TEMPLATE: Final[str] = """\
# GitHub Actions Runner Environment Variables
# Copy this file to .devcontainer/.env and fill in your values
# DO NOT commit .env file to version control

# GitHub Personal Access Token with repo and workflow scopes
GH_PAT=

# GitHub username or organization name
GITHUB_OWNER=

# GitHub Actions runner registration token (expires after 1 hour)
GITHUB_RUNNER_TOKEN=

# Docker Hub access token
DOCKER_ACCESS_TOKEN=

# Docker Hub username
DOCKER_USERNAME=
"""

PLACEHOLDER: Final[str] = (
    "# Placeholder .env - run `aspire-devcontainer setup-env` to configure\n"
)

BASHRC_MARKER: Final[str] = "# Source GitHub Actions environment (added by aspire-devcontainer)"

# Characters bash still interprets inside double quotes.
_SPECIAL: Final[re.Pattern[str]] = re.compile(r'([\\"$`])')
_ESCAPED: Final[re.Pattern[str]] = re.compile(r'\\([\\"$`])')


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        inner = value[1:-1]
        if value[0] == '"':
            inner = _ESCAPED.sub(r"\1", inner)
        return inner
    return value


def parse_env_text(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines into a mapping, last assignment wins."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            logger.debug("ignoring malformed .env line: %r", raw_line)
            continue
        values[key] = _unquote(value.strip())
    return values


def _quote(value: str) -> str:
    escaped = _SPECIAL.sub(r"\\\1", value)
    return f'"{escaped}"'


def render_env(values: Mapping[str, str], now: datetime | None = None) -> str:
    """Render the required keys (plus any extras) as a .env document."""
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M:%S %Z").strip()
    lines = [
        "# GitHub Actions Runner Environment Variables",
        f"# Created on {stamp}",
        "# WARNING: Do not commit this file to version control",
        "",
    ]
    for key in REQUIRED_KEYS:
        lines.append(f"{key}={_quote(values.get(key, ''))}")
    for key, value in values.items():
        if key not in REQUIRED_KEYS:
            lines.append(f"{key}={_quote(value)}")
    return "\n".join(lines) + "\n"


def write_secure_text(path: Path, content: str) -> None:
    """Atomically replace ``path`` with ``content`` at mode 600."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, SECURE_MODE)
        os.replace(tmp_name, path)
    except OSError as exc:
        Path(tmp_name).unlink(missing_ok=True)
        raise EnvFileError(f"Failed to write {path}: {exc}") from exc


def write_env_file(path: Path, values: Mapping[str, str]) -> Path:
    write_secure_text(path, render_env(values))
    out.success(f"Created {path} with environment variables")
    return path


def read_env_file(path: Path) -> dict[str, str]:
    if not path.is_file():
        raise EnvFileError(f"Environment file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise EnvFileError(f"Cannot read environment file: {path}") from exc
    return parse_env_text(text)


def create_template(path: Path) -> bool:
    """Write ``.env.example`` unless it already exists."""
    if path.exists():
        out.info(f"Template already exists: {path}")
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(TEMPLATE, encoding="utf-8")
    out.success(f"Created {path.name} template")
    return True


def gitignore_pattern(env_file: Path, workspace: Path) -> str:
    try:
        return env_file.resolve().relative_to(workspace.resolve()).as_posix()
    except ValueError:
        return f"{env_file.parent.name}/{env_file.name}"


def _gitignore_lines(gitignore: Path) -> list[str]:
    return [line.strip() for line in gitignore.read_text(encoding="utf-8").splitlines()]


def is_gitignored(env_file: Path, gitignore: Path, workspace: Path) -> bool:
    if not gitignore.is_file():
        return False
    pattern = gitignore_pattern(env_file, workspace)
    for line in _gitignore_lines(gitignore):
        if not line or line.startswith("#") or line.startswith("!"):
            continue
        candidate = line.lstrip("/")
        if candidate == pattern or fnmatch.fnmatch(pattern, candidate):
            return True
    return False


def ensure_gitignore(env_file: Path, gitignore: Path, workspace: Path) -> bool:
    """Make sure the env file is ignored; ``False`` when no .gitignore exists."""
    pattern = gitignore_pattern(env_file, workspace)
    if not gitignore.is_file():
        out.warning(f".gitignore not found - remember to exclude {pattern} from version control")
        return False
    if is_gitignored(env_file, gitignore, workspace):
        out.info(f"{pattern} already in .gitignore")
        return True
    existing = gitignore.read_text(encoding="utf-8")
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with gitignore.open("a", encoding="utf-8") as handle:
        handle.write(f"{prefix}\n# Environment configuration with secrets\n{pattern}\n")
    out.success(f"Added {pattern} to .gitignore")
    return True


def file_mode(path: Path) -> str:
    try:
        return format(stat.S_IMODE(path.stat().st_mode), "o")
    except OSError:
        return "unknown"


def set_secure_permissions(path: Path) -> bool:
    try:
        os.chmod(path, SECURE_MODE)
    except OSError as exc:
        logger.debug("chmod 600 failed on %s: %s", path, exc)
        out.warning(f"Could not set permissions to 600 on {path}")
        return False
    out.success(f"Set secure permissions (600) on {path}")
    return True


def set_container_ownership(path: Path) -> bool:
    uid, gid = os.getuid(), os.getgid()
    try:
        os.chown(path, uid, gid)
    except OSError as exc:
        logger.debug("chown failed on %s: %s", path, exc)
        out.info(f"Could not change ownership of {path} (likely bind-mounted from host)")
        return False
    out.success(f"Ownership of {path} set to UID:GID {uid}:{gid}")
    return True


def export_to_environ(
    values: Mapping[str, str],
    environ: MutableMapping[str, str] | None = None,
    keys: Iterable[str] | None = None,
) -> None:
    target = os.environ if environ is None else environ
    selected = values if keys is None else {k: values[k] for k in keys if k in values}
    for key, value in selected.items():
        target[key] = value


def install_bashrc_hook(bashrc: Path, env_file: Path, now: datetime | None = None) -> bool:
    """Append a guarded ``source`` of the env file; ``False`` if already present."""
    if bashrc.is_file():
        content = bashrc.read_text(encoding="utf-8")
        if BASHRC_MARKER in content or f"source {env_file}" in content:
            out.info("Source command already in ~/.bashrc")
            return False
        suffix = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
        backup = bashrc.with_name(f"{bashrc.name}.backup.{suffix}")
        backup.write_text(content, encoding="utf-8")
        out.success(f"Created backup: {backup}")
    with bashrc.open("a", encoding="utf-8") as handle:
        handle.write(
            f"\n{BASHRC_MARKER}\n"
            f"[ -f {env_file} ] && set -a && source {env_file} && set +a\n"
        )
    out.success("Added source command to ~/.bashrc (tokens stay in the .env file)")
    return True
