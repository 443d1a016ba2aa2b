"""Tests for the devcontainer/docker wrappers that need no daemon."""

from __future__ import annotations

import io
import json
import os
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import pytest

from aspire_devcontainer import container
from aspire_devcontainer.config import DevcontainerConfig
from aspire_devcontainer.container import (
    CleanupAction,
    cleanup,
    file_access_report,
    latest_log,
    stale_images,
    summarize_configuration,
    summarize_container,
    validate_configuration,
)
from aspire_devcontainer.report import Status

DEVCONTAINER_JSON = """\
// Aspire devcontainer
{
    "name": "Aspire",
    "build": {"dockerfile": "Dockerfile"},
    "features": {"ghcr.io/devcontainers/features/docker-in-docker:2": {}},
    "forwardPorts": [18888],
    "postCreateCommand": "aspire-devcontainer post-create",
}
"""


@pytest.fixture
def valid_workspace(workspace: Path) -> Path:
    devcontainer = workspace / ".devcontainer"
    (devcontainer / "devcontainer.json").write_text(DEVCONTAINER_JSON, encoding="utf-8")
    (devcontainer / "Dockerfile").write_text("FROM mcr.microsoft.com/dotnet/sdk\n", encoding="utf-8")
    script = devcontainer / "scripts" / "devcontainer-rebuild.sh"
    script.write_text("#!/usr/bin/env bash\n", encoding="utf-8")
    script.chmod(0o755)
    return workspace


# ============================================================================
# validate
# ============================================================================


class TestValidateConfiguration:
    def test_valid_setup_passes(self, valid_workspace: Path, config: DevcontainerConfig) -> None:
        report = validate_configuration(config, use_cli=False)

        assert not report.failed
        assert report.by_name(".devcontainer/devcontainer.json").status is Status.OK
        assert report.by_name("devcontainer CLI").status is Status.SKIPPED

    def test_tasks_json_with_comments_is_accepted(
        self, valid_workspace: Path, config: DevcontainerConfig
    ) -> None:
        tasks = valid_workspace / ".vscode" / "tasks.json"
        tasks.parent.mkdir()
        tasks.write_text('{"version": "2.0.0", /* tasks */ "tasks": [],}', encoding="utf-8")

        report = validate_configuration(config, use_cli=False)

        assert report.by_name(".vscode/tasks.json").status is Status.OK
        assert not report.failed

    def test_invalid_jsonc_fails(self, valid_workspace: Path, config: DevcontainerConfig) -> None:
        (valid_workspace / ".devcontainer" / "devcontainer.json").write_text(
            '{"name": "Aspire" "image": "x"}', encoding="utf-8"
        )

        report = validate_configuration(config, use_cli=False)

        assert report.failed
        assert report.by_name(".devcontainer/devcontainer.json").status is Status.ERROR

    def test_non_utf8_devcontainer_json_is_reported(
        self, valid_workspace: Path, config: DevcontainerConfig
    ) -> None:
        (valid_workspace / ".devcontainer" / "devcontainer.json").write_bytes(b'{"name": "\xff"}')

        report = validate_configuration(config, use_cli=False)

        check = report.by_name(".devcontainer/devcontainer.json")
        assert check.status is Status.ERROR
        assert "not valid UTF-8" in check.detail

    def test_dockerfile_outside_workspace(
        self, valid_workspace: Path, config: DevcontainerConfig, tmp_path: Path
    ) -> None:
        outside = tmp_path / "shared" / "Dockerfile"
        outside.parent.mkdir()
        outside.write_text("FROM scratch\n", encoding="utf-8")
        (valid_workspace / ".devcontainer" / "devcontainer.json").write_text(
            json.dumps({"name": "Aspire", "build": {"dockerfile": str(outside)}}), encoding="utf-8"
        )

        report = validate_configuration(config, use_cli=False)

        assert report.by_name("Dockerfile").status is Status.OK
        assert report.by_name("Dockerfile").detail == str(outside)

    def test_non_executable_script_fails(
        self, valid_workspace: Path, config: DevcontainerConfig
    ) -> None:
        (valid_workspace / ".devcontainer" / "scripts" / "devcontainer-rebuild.sh").chmod(0o644)

        report = validate_configuration(config, use_cli=False)

        assert report.failed
        check = report.by_name(".devcontainer/scripts/devcontainer-rebuild.sh")
        assert check.status is Status.ERROR

    def test_missing_global_json_fails(
        self, valid_workspace: Path, config: DevcontainerConfig
    ) -> None:
        (valid_workspace / "global.json").unlink()

        assert validate_configuration(config, use_cli=False).failed

    def test_missing_cli_is_only_a_warning(
        self,
        valid_workspace: Path,
        config: DevcontainerConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(container, "which", lambda name: None)

        report = validate_configuration(config)

        assert report.by_name("devcontainer CLI").status is Status.WARNING
        assert not report.failed


# ============================================================================
# summaries
# ============================================================================


class TestSummaries:
    def test_configuration_rows(self) -> None:
        rows = dict(
            summarize_configuration(
                {
                    "name": "Aspire",
                    "features": {"ghcr.io/devcontainers/features/node:1": {}},
                    "forwardPorts": [18888, 4317],
                    "hostRequirements": {"cpus": 4, "memory": "8gb"},
                    "postCreateCommand": ["bash", "-c", "echo hi"],
                    "mounts": [{"source": "aspire-nuget-cache", "target": "/nuget", "type": "volume"}],
                }
            )
        )

        assert rows["Name"] == "Aspire"
        assert rows["Features"] == "ghcr.io/devcontainers/features/node:1"
        assert rows["Forward ports"] == "18888, 4317"
        assert rows["Host requirements"] == "cpus=4, memory=8gb"
        assert rows["postCreateCommand"] == "bash, -c, echo hi"
        assert "source=aspire-nuget-cache" in rows["Mount"]

    def test_configuration_defaults(self) -> None:
        rows = dict(summarize_configuration({}))

        assert rows["Name"] == "(unnamed)"
        assert rows["Features"] == "none"

    def test_container_rows(self) -> None:
        rows = summarize_container(
            {
                "Id": "0123456789abcdef",
                "Name": "/aspire_devcontainer",
                "Config": {"Image": "vsc-aspire-123"},
                "State": {"Status": "running", "StartedAt": "2024-01-01T00:00:00Z"},
                "Mounts": [{"Type": "volume", "Name": "aspire-nuget-cache", "Destination": "/nuget"}],
            }
        )

        assert rows[0] == ("ID", "0123456789ab")
        assert ("Name", "aspire_devcontainer") in rows
        assert ("Mount (volume)", "aspire-nuget-cache -> /nuget") in rows


# ============================================================================
# build, logs and cleanup
# ============================================================================


class TestBuild:
    NOW = datetime(2024, 1, 2, 3, 4, 5)

    @pytest.fixture
    def calls(self, monkeypatch: pytest.MonkeyPatch) -> list[tuple[list[str], Path]]:
        recorded: list[tuple[list[str], Path]] = []

        def fake_tee(cmd, log_path: Path, stream) -> int:
            recorded.append((list(cmd), log_path))
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text(f"{cmd[1]} output\n", encoding="utf-8")
            return 1 if "fail" in log_path.parent.name else 0

        monkeypatch.setattr(container, "require_commands", lambda names: None)
        monkeypatch.setattr(container, "tee", fake_tee)
        return recorded

    def test_build_then_up(
        self, config: DevcontainerConfig, calls: list[tuple[list[str], Path]]
    ) -> None:
        code = container.build(config, stream=io.StringIO(), now=self.NOW)

        assert code == 0
        (build_cmd, build_log), (up_cmd, up_log) = calls
        assert build_cmd[:2] == ["devcontainer", "build"]
        assert "--no-cache" not in build_cmd
        assert "--remove-existing-container" not in up_cmd
        assert build_log.name == "build-20240102-030405.log"
        assert up_log.name == "up-20240102-030405.log"

    def test_rebuild_replaces_container(
        self, config: DevcontainerConfig, calls: list[tuple[list[str], Path]]
    ) -> None:
        container.build(config, rebuild=True, stream=io.StringIO(), now=self.NOW)

        (build_cmd, build_log), (up_cmd, _) = calls
        assert "--no-cache" in build_cmd
        assert "--remove-existing-container" in up_cmd
        assert build_log.name.startswith("rebuild-")

    def test_failed_build_skips_up(
        self,
        config: DevcontainerConfig,
        calls: list[tuple[list[str], Path]],
        tmp_path: Path,
    ) -> None:
        failing = replace(config, container=replace(config.container, log_dir=tmp_path / "fail"))

        code = container.build(failing, stream=io.StringIO(), now=self.NOW)

        assert code == 1
        assert len(calls) == 1


def test_show_logs(tmp_path: Path) -> None:
    assert container.show_logs(tmp_path) is False
    (tmp_path / "up-20240101-000000.log").write_text("a\nb\nc\n", encoding="utf-8")

    assert container.show_logs(tmp_path, lines=2) is True


def test_latest_log_picks_newest(tmp_path: Path) -> None:
    older = tmp_path / "build-20240101-000000.log"
    newer = tmp_path / "up-20240101-000100.log"
    older.write_text("old\n", encoding="utf-8")
    newer.write_text("new\n", encoding="utf-8")
    past = time.time() - 60
    os.utime(older, (past, past))
    (tmp_path / "unrelated.log").write_text("x\n", encoding="utf-8")

    assert latest_log(tmp_path) == newer
    assert latest_log(tmp_path / "missing") is None


def test_stale_images_keep_newest(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(container, "capture", lambda cmd: "aaa\nbbb\nbbb\nccc\n")

    assert stale_images("vsc-aspire") == ["bbb", "ccc"]


class TestCleanup:
    @pytest.fixture
    def commands(self, monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
        calls: list[list[str]] = []
        monkeypatch.setattr(container, "require_commands", lambda names: None)
        monkeypatch.setattr(
            container, "run", lambda cmd, **kwargs: calls.append(list(cmd)) or 0
        )
        return calls

    def test_destructive_action_needs_confirmation(
        self, config: DevcontainerConfig, commands: list[list[str]]
    ) -> None:
        code = cleanup(config, CleanupAction.VOLUMES, confirm=lambda question: False)

        assert code == 0
        assert commands == []

    def test_yes_skips_confirmation(
        self, config: DevcontainerConfig, commands: list[list[str]]
    ) -> None:
        def refuse(question: str) -> bool:
            raise AssertionError("must not prompt")

        cleanup(config, CleanupAction.PYTHON_CACHE, assume_yes=True, confirm=refuse)

        removed = [cmd[-1] for cmd in commands if cmd[:3] == ["docker", "volume", "rm"]]
        assert removed == list(config.container.python_volumes)

    def test_build_cache_runs_without_prompt(
        self, config: DevcontainerConfig, commands: list[list[str]]
    ) -> None:
        cleanup(config, CleanupAction.BUILD_CACHE, confirm=lambda question: False)

        assert ["docker", "builder", "prune", "-f"] in commands
        assert commands[-1] == ["docker", "system", "df"]


# ============================================================================
# file access
# ============================================================================


def test_file_access_report(valid_workspace: Path, config: DevcontainerConfig) -> None:
    report = file_access_report(config)

    assert report.by_name("global.json").status is Status.OK
    assert report.by_name("global.json").detail.endswith(", readable")
    assert report.by_name(".devcontainer/.env").status is Status.WARNING
    assert report.by_name("devcontainer name").detail == "Aspire"
    assert not report.failed


def test_file_access_report_with_non_utf8_config(
    valid_workspace: Path, config: DevcontainerConfig
) -> None:
    (valid_workspace / ".devcontainer" / "devcontainer.json").write_bytes(b'{"name": "\xff"}')

    report = file_access_report(config)

    assert report.by_name("devcontainer name").status is Status.ERROR
    assert "not valid UTF-8" in report.by_name("devcontainer name").detail
