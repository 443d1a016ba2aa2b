"""Non-destructive GitHub REST probes for the captured credentials."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Final

import requests

logger: Final[logging.Logger] = logging.getLogger(__name__)

GITHUB_API_BASE: Final[str] = "https://api.github.com"
DEFAULT_TIMEOUT: Final[float] = 10.0
DEFAULT_REPOSITORY: Final[str] = "aspire"


@dataclass(frozen=True, slots=True)
class TokenCheck:
    valid: bool
    login: str | None = None
    scopes: tuple[str, ...] = ()
    owner_matches: bool | None = None
    message: str = ""

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


@dataclass(frozen=True, slots=True)
class Runner:
    name: str
    status: str


@dataclass(frozen=True, slots=True)
class RunnerCheck:
    scope: str | None
    total_count: int = 0
    runners: tuple[Runner, ...] = field(default_factory=tuple)
    message: str = ""

    @property
    def found(self) -> bool:
        return self.total_count > 0


def _parse_scopes(header: str | None) -> tuple[str, ...]:
    if not header:
        return ()
    return tuple(part.strip() for part in header.split(",") if part.strip())


class GitHubClient:
    """Thin authenticated client over ``requests``."""

    def __init__(
        self,
        token: str,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        base_url: str = GITHUB_API_BASE,
    ) -> None:
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"token {token}",
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": "aspire-devcontainer",
            }
        )
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")

    def _get(self, path: str) -> requests.Response:
        url = f"{self._base_url}{path}"
        logger.debug("GET %s", url)
        return self._session.get(url, timeout=self._timeout)

    def verify_token(self, owner: str | None = None) -> TokenCheck:
        try:
            response = self._get("/user")
            payload: dict[str, Any] = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.debug("token verification request failed: %s", exc)
            return TokenCheck(valid=False, message=f"GitHub API unreachable: {exc}")

        login = payload.get("login") if isinstance(payload, dict) else None
        if response.status_code != 200 or not login:
            message = payload.get("message") if isinstance(payload, dict) else None
            return TokenCheck(
                valid=False,
                message=f"GitHub API error: {message}" if message else "GitHub token verification failed",
            )

        return TokenCheck(
            valid=True,
            login=str(login),
            scopes=_parse_scopes(response.headers.get("X-OAuth-Scopes")),
            owner_matches=(str(login) == owner) if owner else None,
            message=f"GitHub token valid for user: {login}",
        )

    def _runner_listing(self, path: str, scope: str) -> RunnerCheck | None:
        try:
            response = self._get(path)
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.debug("runner listing failed for %s: %s", path, exc)
            return None
        if response.status_code != 200 or not isinstance(payload, dict) or "message" in payload:
            return None
        runners = tuple(
            Runner(name=str(item.get("name", "?")), status=str(item.get("status", "unknown")))
            for item in payload.get("runners") or []
            if isinstance(item, dict)
        )
        return RunnerCheck(
            scope=scope,
            total_count=int(payload.get("total_count") or 0),
            runners=runners,
        )

    def runners(self, owner: str, repo: str = DEFAULT_REPOSITORY) -> RunnerCheck:
        """Look for self-hosted runners at org scope, then repository scope."""
        org = self._runner_listing(f"/orgs/{owner}/actions/runners", f"org {owner}")
        if org is not None and org.found:
            return org
        repository = self._runner_listing(
            f"/repos/{owner}/{repo}/actions/runners", f"repository {owner}/{repo}"
        )
        if repository is not None and repository.found:
            return repository
        return RunnerCheck(
            scope=None,
            message="No self-hosted runners found for org or repository. Register a runner to proceed.",
        )
