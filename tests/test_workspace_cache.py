"""Tests for the cache volume layout and workspace links."""

from __future__ import annotations

from pathlib import Path

import pytest

from aspire_devcontainer.config import DevcontainerConfig
from aspire_devcontainer.workspace_cache import (
    CACHE_SUBDIRS,
    directory_size,
    human_size,
    init_workspace_cache,
)


class TestHelpers:
    @pytest.mark.parametrize(
        ("size", "expected"),
        [(0, "0B"), (512, "512B"), (2048, "2.0K"), (5 * 1024**2, "5.0M"), (3 * 1024**3, "3.0G")],
    )
    def test_human_size(self, size: int, expected: str) -> None:
        assert human_size(size) == expected

    def test_directory_size_skips_symlinks(self, tmp_path: Path) -> None:
        (tmp_path / "a").write_bytes(b"x" * 100)
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b").write_bytes(b"y" * 50)
        (tmp_path / "link").symlink_to(tmp_path / "a")

        assert directory_size(tmp_path) == 150
        assert directory_size(tmp_path / "missing") == 0


@pytest.mark.posix
class TestInitWorkspaceCache:
    def test_creates_layout_and_links_artifacts(self, config: DevcontainerConfig) -> None:
        stats = init_workspace_cache(config)

        cache_root = config.paths.cache_root
        for name in CACHE_SUBDIRS:
            assert (cache_root / name).is_dir()
        link = config.paths.workspace / "artifacts-cache"
        assert link.is_symlink()
        assert link.resolve() == (cache_root / "artifacts").resolve()
        assert stats.linked == ("artifacts-cache",)
        assert stats.nuget_files == 0

    def test_second_run_is_idempotent(self, config: DevcontainerConfig) -> None:
        nuget = config.paths.cache_root / "nuget" / "packages"
        nuget.mkdir(parents=True)
        (nuget / "pkg.nupkg").write_bytes(b"z" * 64)

        first = init_workspace_cache(config)
        second = init_workspace_cache(config)

        assert first == second
        assert second.linked == ()
        assert second.nuget_files == 1
        assert second.sizes["nuget"] == 64

    def test_links_cached_dotnet_sdk(self, config: DevcontainerConfig) -> None:
        sdk = config.paths.cache_root / ".dotnet" / "sdk"
        sdk.mkdir(parents=True)

        stats = init_workspace_cache(config)

        workspace_dotnet = config.paths.workspace / ".dotnet"
        assert workspace_dotnet.is_symlink()
        assert (workspace_dotnet / "sdk").is_dir()
        assert ".dotnet" in stats.linked

    def test_keeps_workspace_sdk(self, config: DevcontainerConfig) -> None:
        (config.paths.cache_root / ".dotnet" / "sdk").mkdir(parents=True)
        (config.paths.workspace / ".dotnet" / "sdk").mkdir(parents=True)

        stats = init_workspace_cache(config)

        assert not (config.paths.workspace / ".dotnet").is_symlink()
        assert ".dotnet" not in stats.linked
