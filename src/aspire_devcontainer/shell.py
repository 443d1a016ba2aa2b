"""Subprocess helpers shared by the lifecycle and container commands."""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Final, TextIO

from .errors import CommandFailedError, MissingToolError

logger: Final[logging.Logger] = logging.getLogger(__name__)


def which(command: str) -> str | None:
    return shutil.which(command)


def require_commands(commands: Iterable[str]) -> None:
    """Raise :class:`MissingToolError` naming every command not on PATH."""
    missing = [cmd for cmd in commands if which(cmd) is None]
    if missing:
        raise MissingToolError(missing)


def optional_commands(commands: Iterable[str]) -> dict[str, bool]:
    return {cmd: which(cmd) is not None for cmd in commands}


def run(
    cmd: Iterable[str],
    cwd: Path | None = None,
    allow_failure: bool = False,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
    quiet: bool = False,
) -> int:
    """Run a command inheriting stdio unless ``quiet``; return its exit code."""
    cmd_list = list(cmd)
    logger.debug("→ %s", " ".join(cmd_list))
    try:
        completed = subprocess.run(
            cmd_list,
            cwd=cwd,
            check=False,
            env=dict(env) if env is not None else None,
            input=input_text,
            text=True,
            stdout=subprocess.DEVNULL if quiet else None,
            stderr=subprocess.DEVNULL if quiet else None,
        )
    except FileNotFoundError as exc:
        if allow_failure:
            logger.debug("command not found: %s", exc)
            return 127
        raise MissingToolError([cmd_list[0]]) from exc
    if completed.returncode != 0 and not allow_failure:
        raise CommandFailedError(cmd_list, completed.returncode)
    return completed.returncode


def capture(cmd: Iterable[str], cwd: Path | None = None) -> str | None:
    """Return stripped stdout of a successful command, ``None`` otherwise."""
    cmd_list = list(cmd)
    try:
        completed = subprocess.run(
            cmd_list,
            cwd=cwd,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except (FileNotFoundError, subprocess.CalledProcessError) as exc:
        logger.debug("capture failed for %s: %s", " ".join(cmd_list), exc)
        return None
    return completed.stdout.strip()


def first_line(text: str | None, default: str = "not available") -> str:
    if not text:
        return default
    return text.splitlines()[0]


def tee(cmd: Iterable[str], log_path: Path, stream: TextIO, cwd: Path | None = None) -> int:
    """Run ``cmd`` streaming combined output to ``stream`` and ``log_path``."""
    cmd_list = list(cmd)
    logger.debug("→ %s (log: %s)", " ".join(cmd_list), log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("w", encoding="utf-8") as log_file:
        try:
            process = subprocess.Popen(
                cmd_list,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise MissingToolError([cmd_list[0]]) from exc
        assert process.stdout is not None
        for line in process.stdout:
            stream.write(line)
            log_file.write(line)
        return process.wait()


def tail(path: Path, lines: int) -> list[str]:
    """Return the last ``lines`` lines of a text file."""
    content = path.read_text(encoding="utf-8", errors="replace").splitlines()
    return content[-lines:] if lines > 0 else []
