"""Docker Hub credential probes.

Two independent checks are attempted: the Docker Hub REST API with basic
auth, and an isolated ``docker login`` against a throw-away config directory
so the user's own ``~/.docker/config.json`` is never touched.
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Final

import requests

from .shell import which

logger: Final[logging.Logger] = logging.getLogger(__name__)

DOCKER_HUB_USER_ENDPOINT: Final[str] = "https://hub.docker.com/v2/user/"
DOCKER_REGISTRY: Final[str] = "docker.io"
DEFAULT_TIMEOUT: Final[float] = 10.0


@dataclass(frozen=True, slots=True)
class DockerCheck:
    api_ok: bool
    cli_ok: bool | None

    @property
    def passed(self) -> bool:
        return self.api_ok or bool(self.cli_ok)


def verify_hub_api(
    username: str,
    token: str,
    session: requests.Session | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> bool:
    http = session or requests.Session()
    try:
        response = http.get(DOCKER_HUB_USER_ENDPOINT, auth=(username, token), timeout=timeout)
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.debug("Docker Hub API probe failed: %s", exc)
        return False
    return response.status_code == 200 and isinstance(payload, dict) and "username" in payload


def probe_cli_login(username: str, token: str) -> bool | None:
    """Log in and out with a temporary config; ``None`` when docker is absent."""
    docker = which("docker")
    if docker is None:
        return None
    with tempfile.TemporaryDirectory(prefix="docker-config-") as config_dir:
        try:
            login = subprocess.run(
                [
                    docker,
                    "--config",
                    config_dir,
                    "login",
                    "--username",
                    username,
                    "--password-stdin",
                    DOCKER_REGISTRY,
                ],
                input=token,
                text=True,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
                timeout=60,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("docker login failed to run: %s", exc)
            return False
        if login.returncode != 0:
            return False
        subprocess.run(
            [docker, "--config", config_dir, "logout", DOCKER_REGISTRY],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
        return True


def verify_credentials(
    username: str,
    token: str,
    session: requests.Session | None = None,
    use_cli: bool = True,
) -> DockerCheck:
    api_ok = verify_hub_api(username, token, session=session)
    cli_ok = probe_cli_login(username, token) if use_cli else None
    return DockerCheck(api_ok=api_ok, cli_ok=cli_ok)
