"""Tests for the .env reader/writer and its side files."""

from __future__ import annotations

import shutil
import stat
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from textwrap import dedent

import pytest

from aspire_devcontainer import envfile
from aspire_devcontainer.errors import EnvFileError

VALUES = {
    "GH_PAT": "ghp_" + "a" * 36,
    "GITHUB_OWNER": "octo-org",
    "GITHUB_RUNNER_TOKEN": "A" * 29,
    "DOCKER_ACCESS_TOKEN": "dckr_pat_abcdefgh",
    "DOCKER_USERNAME": "octodocker",
}


# ============================================================================
# Parsing and rendering
# ============================================================================


class TestParse:
    def test_comments_blanks_export_and_quotes(self) -> None:
        text = dedent(
            """
            # comment

            GH_PAT="ghp_quoted"
            export GITHUB_OWNER=octo-org
            DOCKER_USERNAME='single'
            EMPTY=
            not a pair
            """
        )

        values = envfile.parse_env_text(text)

        assert values == {
            "GH_PAT": "ghp_quoted",
            "GITHUB_OWNER": "octo-org",
            "DOCKER_USERNAME": "single",
            "EMPTY": "",
        }

    def test_last_assignment_wins(self) -> None:
        assert envfile.parse_env_text("A=1\nA=2\n") == {"A": "2"}

    def test_value_keeps_inner_equals(self) -> None:
        assert envfile.parse_env_text("TOKEN=abc=def\n") == {"TOKEN": "abc=def"}


class TestRender:
    def test_values_are_double_quoted_in_key_order(self) -> None:
        now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

        text = envfile.render_env(VALUES, now=now)
        lines = [line for line in text.splitlines() if line and not line.startswith("#")]

        assert "# Created on 2024-01-02 03:04:05 UTC" in text
        assert [line.split("=", 1)[0] for line in lines] == list(envfile.REQUIRED_KEYS)
        assert lines[1] == 'GITHUB_OWNER="octo-org"'

    def test_special_characters_survive_a_reparse(self) -> None:
        values = {**VALUES, "GH_PAT": 'has "quotes" and \\ slash'}

        parsed = envfile.parse_env_text(envfile.render_env(values))

        assert parsed["GH_PAT"] == values["GH_PAT"]

    def test_shell_expansion_characters_are_escaped(self) -> None:
        values = {**VALUES, "DOCKER_ACCESS_TOKEN": "pa$$word`id`"}

        text = envfile.render_env(values)

        assert 'DOCKER_ACCESS_TOKEN="pa\\$\\$word\\`id\\`"' in text
        assert envfile.parse_env_text(text)["DOCKER_ACCESS_TOKEN"] == "pa$$word`id`"

    @pytest.mark.posix
    @pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
    def test_bash_reads_the_same_values(self, tmp_path: Path) -> None:
        tricky = 'a$HOME "b" `c` \\d $(e)'
        path = tmp_path / ".env"
        envfile.write_env_file(path, {**VALUES, "GH_PAT": tricky})

        completed = subprocess.run(
            ["bash", "-c", 'set -a && source "$1" && printf %s "$GH_PAT"', "bash", str(path)],
            capture_output=True,
            text=True,
            check=True,
        )

        assert completed.stdout == tricky
        assert envfile.read_env_file(path)["GH_PAT"] == tricky

    def test_extra_keys_are_kept(self) -> None:
        text = envfile.render_env({**VALUES, "EXTRA": "1"})

        assert 'EXTRA="1"' in text


# ============================================================================
# Writing
# ============================================================================


class TestWrite:
    def test_written_file_has_mode_600(self, tmp_path: Path) -> None:
        path = tmp_path / ".devcontainer" / ".env"

        envfile.write_env_file(path, VALUES)

        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert envfile.file_mode(path) == "600"
        assert envfile.read_env_file(path) == VALUES

    def test_no_temporary_files_left_behind(self, tmp_path: Path) -> None:
        path = tmp_path / ".env"

        envfile.write_env_file(path, VALUES)
        envfile.write_env_file(path, {**VALUES, "GITHUB_OWNER": "other"})

        assert sorted(p.name for p in tmp_path.iterdir()) == [".env"]
        assert envfile.read_env_file(path)["GITHUB_OWNER"] == "other"

    def test_read_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(EnvFileError, match="not found"):
            envfile.read_env_file(tmp_path / "missing.env")

    def test_template_is_never_overwritten(self, tmp_path: Path) -> None:
        example = tmp_path / ".env.example"

        assert envfile.create_template(example)
        example.write_text("custom\n", encoding="utf-8")
        assert not envfile.create_template(example)
        assert example.read_text(encoding="utf-8") == "custom\n"

    def test_export_to_environ_selected_keys(self) -> None:
        target: dict[str, str] = {}

        envfile.export_to_environ(VALUES, target, keys=["GITHUB_OWNER", "MISSING"])

        assert target == {"GITHUB_OWNER": "octo-org"}


# ============================================================================
# .gitignore and .bashrc
# ============================================================================


class TestGitignore:
    def test_pattern_is_relative_to_workspace(self, workspace: Path) -> None:
        env_file = workspace / ".devcontainer" / ".env"

        assert envfile.gitignore_pattern(env_file, workspace) == ".devcontainer/.env"

    def test_appends_once(self, workspace: Path) -> None:
        env_file = workspace / ".devcontainer" / ".env"
        gitignore = workspace / ".gitignore"

        assert envfile.ensure_gitignore(env_file, gitignore, workspace)
        assert envfile.ensure_gitignore(env_file, gitignore, workspace)

        content = gitignore.read_text(encoding="utf-8")
        assert content.count(".devcontainer/.env") == 1
        assert content.startswith("bin/\nobj/\n")
        assert envfile.is_gitignored(env_file, gitignore, workspace)

    def test_glob_entry_counts(self, workspace: Path) -> None:
        gitignore = workspace / ".gitignore"
        gitignore.write_text(".devcontainer/.env*\n", encoding="utf-8")

        assert envfile.is_gitignored(workspace / ".devcontainer" / ".env", gitignore, workspace)

    def test_missing_gitignore(self, tmp_path: Path) -> None:
        env_file = tmp_path / ".devcontainer" / ".env"

        assert not envfile.ensure_gitignore(env_file, tmp_path / ".gitignore", tmp_path)
        assert not (tmp_path / ".gitignore").exists()


class TestBashrcHook:
    def test_backup_and_single_append(self, tmp_path: Path) -> None:
        bashrc = tmp_path / ".bashrc"
        bashrc.write_text("export EDITOR=vim\n", encoding="utf-8")
        env_file = tmp_path / ".env"
        now = datetime(2024, 5, 6, 7, 8, 9)

        assert envfile.install_bashrc_hook(bashrc, env_file, now=now)
        assert not envfile.install_bashrc_hook(bashrc, env_file, now=now)

        backup = tmp_path / ".bashrc.backup.20240506_070809"
        assert backup.read_text(encoding="utf-8") == "export EDITOR=vim\n"
        content = bashrc.read_text(encoding="utf-8")
        assert content.count(envfile.BASHRC_MARKER) == 1
        assert f"source {env_file}" in content

    def test_creates_missing_bashrc(self, tmp_path: Path) -> None:
        bashrc = tmp_path / ".bashrc"

        assert envfile.install_bashrc_hook(bashrc, tmp_path / ".env")
        assert envfile.BASHRC_MARKER in bashrc.read_text(encoding="utf-8")
