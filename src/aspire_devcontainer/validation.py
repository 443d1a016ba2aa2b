"""Format validation for the captured credentials."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from .report import Status

GITHUB_USERNAME_RE: Final[re.Pattern[str]] = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$")
RUNNER_TOKEN_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Z0-9]{20,}$")
DOCKER_USERNAME_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$|^[a-z0-9]$")

MIN_GH_PAT_LENGTH: Final[int] = 20
MIN_DOCKER_TOKEN_LENGTH: Final[int] = 8


@dataclass(frozen=True, slots=True)
class Issue:
    """A validation finding; ``ERROR`` rejects the value, ``WARNING`` does not."""

    name: str
    severity: Status
    message: str


def validate_github_username(value: str) -> bool:
    return GITHUB_USERNAME_RE.match(value) is not None


def validate_runner_token_format(value: str) -> bool:
    return RUNNER_TOKEN_RE.match(value) is not None


def validate_docker_username(value: str) -> bool:
    return DOCKER_USERNAME_RE.match(value) is not None


def validate_token_length(value: str, min_length: int) -> bool:
    return len(value) >= min_length


def validate_variable(name: str, value: str, required: bool = True) -> list[Issue]:
    """Check one variable, returning every finding."""
    if not value:
        if required:
            return [Issue(name, Status.ERROR, f"{name} cannot be empty")]
        return []

    issues: list[Issue] = []
    if name == "GITHUB_OWNER" and not validate_github_username(value):
        issues.append(
            Issue(name, Status.ERROR, f"Invalid GitHub username/organization format: {value}")
        )
    elif name == "GITHUB_RUNNER_TOKEN" and not validate_runner_token_format(value):
        issues.append(Issue(name, Status.WARNING, "Runner token format may be incorrect"))
    elif name == "GH_PAT" and not validate_token_length(value, MIN_GH_PAT_LENGTH):
        issues.append(
            Issue(
                name,
                Status.WARNING,
                f"GitHub PAT appears too short ({len(value)} chars, "
                f"expected at least {MIN_GH_PAT_LENGTH})",
            )
        )
    elif name == "DOCKER_ACCESS_TOKEN" and not validate_token_length(
        value, MIN_DOCKER_TOKEN_LENGTH
    ):
        issues.append(
            Issue(
                name,
                Status.WARNING,
                f"Docker access token appears too short ({len(value)} chars, "
                f"expected at least {MIN_DOCKER_TOKEN_LENGTH})",
            )
        )
    elif name == "DOCKER_USERNAME" and not validate_docker_username(value):
        issues.append(
            Issue(name, Status.WARNING, f"Docker username format may be incorrect: {value}")
        )
    return issues


def is_acceptable(issues: list[Issue]) -> bool:
    return not any(issue.severity is Status.ERROR for issue in issues)
