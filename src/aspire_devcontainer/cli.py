"""Typer entry point for the Aspire devcontainer tooling."""

from __future__ import annotations

import functools
import os
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, TypeVar

import typer

from . import console as out
from . import container as container_ops
from . import envfile, lifecycle
from .config import DevcontainerConfig, load_config
from .docker_api import verify_credentials
from .errors import DevcontainerError, ExitCode
from .github_api import GitHubClient
from .gpu import detect_gpu
from .python_cache import (
    PipxInstaller,
    PythonBinaryCache,
    ToolsCache,
    install_python,
    install_tools,
    validate_cache,
)
from .report import Report, Status
from .validation import is_acceptable, validate_variable

F = TypeVar("F", bound=Callable[..., Any])

REQUIRED_SCOPES = ("repo", "workflow")
PROMPTS: Mapping[str, str] = {
    "GH_PAT": "GitHub Personal Access Token (repo, workflow scopes)",
    "GITHUB_OWNER": "GitHub username or organization",
    "GITHUB_RUNNER_TOKEN": "GitHub Actions runner registration token",
    "DOCKER_ACCESS_TOKEN": "Docker Hub access token",
    "DOCKER_USERNAME": "Docker Hub username",
}

app = typer.Typer(
    help="Lifecycle hooks and operator helpers for the Aspire devcontainer",
    no_args_is_help=True,
)
container_app = typer.Typer(help="Build, inspect and maintain the devcontainer", no_args_is_help=True)
app.add_typer(container_app, name="container")


def _handle_errors(func: F) -> F:
    """Map :class:`DevcontainerError` onto its exit code."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except DevcontainerError as exc:
            out.error(str(exc))
            raise typer.Exit(code=int(exc.exit_code)) from exc

    return wrapper  # type: ignore[return-value]


def _exit(code: int) -> None:
    if code != ExitCode.OK:
        raise typer.Exit(code=int(code))


def _config() -> DevcontainerConfig:
    return load_config()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show diagnostic logging"),
) -> None:
    """Aspire devcontainer tooling."""
    out.configure_logging(verbose)


# ---------------------------------------------------------------------------
# credentials
# ---------------------------------------------------------------------------


def _prompt_values(existing: Mapping[str, str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for key in envfile.REQUIRED_KEYS:
        secret = key in envfile.SECRET_KEYS
        while True:
            value = typer.prompt(
                PROMPTS[key],
                default=existing.get(key, ""),
                hide_input=secret,
                show_default=not secret,
            ).strip()
            issues = validate_variable(key, value)
            for issue in issues:
                (out.error if issue.severity is Status.ERROR else out.warning)(issue.message)
            if is_acceptable(issues):
                values[key] = value
                break
    return values


@app.command("setup-env")
@_handle_errors
def setup_env(
    non_interactive: bool = typer.Option(
        False, "--non-interactive", "-n", help="Read values from the current environment"
    ),
    from_file: Path | None = typer.Option(
        None, "--from-file", "-f", exists=True, dir_okay=False, help="Read values from a .env file"
    ),
    skip_bashrc: bool = typer.Option(False, "--skip-bashrc", help="Do not modify ~/.bashrc"),
) -> None:
    """Capture the runner and registry credentials into .devcontainer/.env."""
    cfg = _config()
    env_file = cfg.paths.env_file
    out.header("GitHub Actions Environment Setup")

    if from_file is not None:
        out.info(f"Loading values from {from_file}")
        values = envfile.read_env_file(from_file)
    elif non_interactive:
        values = {key: os.environ.get(key, "") for key in envfile.REQUIRED_KEYS}
    else:
        existing = envfile.parse_env_text(env_file.read_text(encoding="utf-8")) if env_file.is_file() else {}
        values = _prompt_values(existing)

    accepted = True
    for key in envfile.REQUIRED_KEYS:
        issues = validate_variable(key, values.get(key, ""))
        for issue in issues:
            (out.error if issue.severity is Status.ERROR else out.warning)(issue.message)
        accepted = accepted and is_acceptable(issues)
    if not accepted:
        out.error("Validation failed; .env was not written")
        raise typer.Exit(code=int(ExitCode.FAILURE))

    envfile.create_template(cfg.paths.env_example)
    envfile.write_env_file(env_file, values)
    envfile.ensure_gitignore(env_file, cfg.paths.gitignore, cfg.paths.workspace)
    if not skip_bashrc:
        envfile.install_bashrc_hook(Path.home() / ".bashrc", env_file)

    out.success("Environment configured")
    out.info("Next: aspire-devcontainer verify-env")


def _verify_variables(values: Mapping[str, str], report: Report) -> None:
    for key in envfile.REQUIRED_KEYS:
        value = values.get(key, "")
        if not value:
            report.error(key, "NOT SET")
            continue
        detail = "SET" if key in envfile.SECRET_KEYS else f"SET ({value})"
        report.ok(key, detail)
        for issue in validate_variable(key, value):
            report.add(f"{key} format", issue.severity, issue.message)


def _verify_github(values: Mapping[str, str], report: Report) -> None:
    token, owner = values.get("GH_PAT", ""), values.get("GITHUB_OWNER", "")
    if not token:
        report.skipped("GitHub token", "GH_PAT not set")
        return
    client = GitHubClient(token)
    check = client.verify_token(owner or None)
    if not check.valid:
        report.error("GitHub token", check.message)
        return
    report.ok("GitHub token", check.message)
    if not check.scopes:
        report.info("GitHub scopes", "no classic scopes reported (fine-grained token?)")
    else:
        missing = [scope for scope in REQUIRED_SCOPES if not check.has_scope(scope)]
        if missing:
            report.warning("GitHub scopes", f"missing: {', '.join(missing)}")
        else:
            report.ok("GitHub scopes", ", ".join(check.scopes))
    if check.owner_matches is False:
        report.info("GitHub owner", f"{owner} differs from token user {check.login} (organization?)")

    if not owner:
        report.skipped("GitHub runners", "GITHUB_OWNER not set")
        return
    runners = client.runners(owner)
    if runners.found:
        names = ", ".join(f"{runner.name} ({runner.status})" for runner in runners.runners)
        report.ok("GitHub runners", f"{runners.total_count} in {runners.scope}: {names}")
    else:
        report.warning("GitHub runners", runners.message)


def _verify_docker(values: Mapping[str, str], report: Report) -> None:
    username, token = values.get("DOCKER_USERNAME", ""), values.get("DOCKER_ACCESS_TOKEN", "")
    if not username or not token:
        report.skipped("Docker Hub", "credentials not set")
        return
    check = verify_credentials(username, token)
    if check.passed:
        via = "API" if check.api_ok else "docker login"
        report.ok("Docker Hub", f"credentials valid for {username} ({via})")
    else:
        report.error("Docker Hub", "authentication failed")


@app.command("verify-env")
@_handle_errors
def verify_env(
    env_file: Path | None = typer.Option(None, "--env-file", help="Env file to load"),
    load: bool = typer.Option(True, "--load/--no-load", help="Load the env file before checking"),
    offline: bool = typer.Option(False, "--offline", help="Skip GitHub and Docker Hub probes"),
) -> None:
    """Check that the credentials are set, well-formed and accepted upstream."""
    cfg = _config()
    path = env_file or cfg.paths.env_file
    out.header("Environment Verification")
    report = Report("Environment Verification")

    values = {key: os.environ.get(key, "") for key in envfile.REQUIRED_KEYS}
    if load:
        if path.is_file():
            values.update(envfile.read_env_file(path))
            report.ok("env file", f"{path} (mode {envfile.file_mode(path)})")
        else:
            report.warning("env file", f"{path} not found, using current environment")

    _verify_variables(values, report)
    if offline:
        report.skipped("GitHub API", "offline")
        report.skipped("Docker Hub", "offline")
    else:
        _verify_github(values, report)
        _verify_docker(values, report)

    report.render()
    _exit(report.exit_code)


# ---------------------------------------------------------------------------
# lifecycle hooks
# ---------------------------------------------------------------------------


@app.command("init-env")
def init_env() -> None:
    """Prepare .devcontainer/.env (initializeCommand); always exits 0."""
    try:
        report = lifecycle.init_env(_config())
    except DevcontainerError as exc:
        out.warning(str(exc))
        return
    report.render()


@app.command("init-permissions")
@_handle_errors
def init_permissions(
    max_wait: float | None = typer.Option(
        None, "--max-wait", min=0, help="Seconds to wait for write access"
    ),
    strict: bool = typer.Option(False, "--strict", help="Fail when write access times out"),
) -> None:
    """Fix workspace ownership and wait for write access."""
    _exit(lifecycle.init_permissions(_config(), max_wait, strict=strict))


@app.command("init-cache")
@_handle_errors
def init_cache() -> None:
    """Create cache volume directories and workspace links."""
    lifecycle.init_cache(_config())


@app.command("init-python-cache")
@_handle_errors
def init_python_cache() -> None:
    """Inspect the Python caches and link what is available."""
    report = lifecycle.init_python_cache(_config())
    report.render()
    _exit(report.exit_code)


@app.command("post-create")
def post_create() -> None:
    """Post-create diagnostics (postCreateCommand); always exits 0."""
    try:
        report = lifecycle.post_create_validation(_config())
    except DevcontainerError as exc:
        out.warning(str(exc))
        return
    report.render()


# ---------------------------------------------------------------------------
# python caches
# ---------------------------------------------------------------------------


@app.command("python-install")
@_handle_errors
def python_install(
    installer: list[str] | None = typer.Argument(
        None, help="Installer command to run on a cache miss"
    ),
    version: str | None = typer.Option(None, "--version", help="CPython version"),
) -> None:
    """Restore CPython from the binaries cache, or install and cache it."""
    cfg = _config()
    cache = PythonBinaryCache(cfg.python.cache_dir, cfg.python.install_dir)
    outcome = install_python(cache, version or cfg.python.version, installer, detect_gpu())
    out.info(f"Outcome: {outcome.value}")


@app.command("python-tools")
@_handle_errors
def python_tools(
    tools: list[str] | None = typer.Option(None, "--tool", "-t", help="Tool to install (repeatable)"),
    max_parallel: int | None = typer.Option(None, "--max-parallel", min=1, help="Concurrent installers"),
) -> None:
    """Restore Python tools from cache, installing the rest with pipx."""
    cfg = _config()
    selected = tuple(tools) if tools else cfg.tools.tools
    out.header("Python Tools")
    cache = ToolsCache(cfg.tools.cache_dir, cfg.tools.tools_dir)
    installer = PipxInstaller(log_dir=cfg.container.log_dir)
    cfg.container.log_dir.mkdir(parents=True, exist_ok=True)
    result = install_tools(selected, cache, installer, max_parallel or cfg.tools.max_parallel)

    out.subheader("Summary")
    out.plain(f"  Restored from cache: {len(result.restored)} (~{result.seconds_saved}s saved)")
    out.plain(f"  Installed:           {len(result.installed)}")
    out.plain(f"  Failed:              {len(result.failed)}")
    for tool, reason in result.failed.items():
        out.warning(f"{tool}: {reason}")


@app.command("validate-cache")
@_handle_errors
def validate_cache_command() -> None:
    """Report on the Python binaries and tools caches."""
    report = validate_cache(_config())
    report.render()
    _exit(report.exit_code)


@app.command("quick-start")
def quick_start() -> None:
    """Print the getting-started guide."""
    lifecycle.quick_start(_config())


@app.command("make-executable")
def make_executable() -> None:
    """Mark every .devcontainer shell script executable."""
    cfg = _config()
    changed = lifecycle.make_scripts_executable(cfg.paths.workspace)
    for script in changed:
        out.success(f"chmod +x {script}")
    out.info(f"{len(changed)} script(s) updated")


# ---------------------------------------------------------------------------
# container
# ---------------------------------------------------------------------------


@container_app.command("build")
@_handle_errors
def container_build(
    no_cache: bool = typer.Option(False, "--no-cache", help="Build without the Docker cache"),
) -> None:
    """Build and start the devcontainer, logging to the log directory."""
    _exit(container_ops.build(_config(), no_cache=no_cache))


@container_app.command("rebuild")
@_handle_errors
def container_rebuild() -> None:
    """Rebuild from scratch and replace the running container."""
    _exit(container_ops.build(_config(), rebuild=True))


@container_app.command("logs")
def container_logs(
    lines: int = typer.Option(50, "--lines", "-n", min=1, help="Lines to show"),
) -> None:
    """Show the tail of the latest build log."""
    if not container_ops.show_logs(_config().container.log_dir, lines):
        _exit(ExitCode.FAILURE)


@container_app.command("inspect")
@_handle_errors
def container_inspect() -> None:
    """Summarize the running devcontainer."""
    _exit(container_ops.inspect_container(_config()))


@container_app.command(
    "exec", context_settings={"allow_extra_args": True, "ignore_unknown_options": True}
)
@_handle_errors
def container_exec(
    command: list[str] | None = typer.Argument(None, help="Command to run (default: bash)"),
) -> None:
    """Run a command inside the running devcontainer."""
    _exit(container_ops.exec_in_container(_config(), command or []))


@container_app.command("config")
@_handle_errors
def container_config() -> None:
    """Summarize the resolved devcontainer configuration."""
    _exit(container_ops.show_configuration(_config()))


@container_app.command("cleanup")
@_handle_errors
def container_cleanup(
    action: container_ops.CleanupAction | None = typer.Argument(
        None, help="Cleanup action; omit to show disk usage"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Show Docker disk usage or reclaim space."""
    _exit(container_ops.cleanup(_config(), action, assume_yes=yes))


@container_app.command("validate")
@_handle_errors
def container_validate(
    skip_cli: bool = typer.Option(False, "--skip-cli", help="Do not call the devcontainer CLI"),
) -> None:
    """Validate devcontainer files and scripts."""
    report = container_ops.validate_configuration(_config(), use_cli=not skip_cli)
    report.render()
    _exit(report.exit_code)


@container_app.command("test-file-access")
def container_test_file_access() -> None:
    """Show existence, mode, owner and readability of key files."""
    report = container_ops.file_access_report(_config())
    report.render()
    _exit(report.exit_code)


if __name__ == "__main__":
    app()
