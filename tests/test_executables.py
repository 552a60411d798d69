"""Tests for agent CLI executable resolution."""

import os
import sys
from unittest.mock import patch

import pytest

from agentshift.util.executables import (
    ExecutableResolver,
    find_node_binary,
    is_node_manager_path,
    resolve_cli_execution,
)


def make_exe(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\necho 1.2.3\n", encoding="utf-8")
    path.chmod(0o755)
    return path


class TestExecutableResolver:
    """Resolution order and caching."""

    @pytest.mark.asyncio
    async def test_custom_path_wins(self, tmp_path):
        exe = make_exe(tmp_path / "my-claude")
        resolver = ExecutableResolver("claude", search_patterns=[], custom_path=str(exe))
        assert await resolver.resolve() == str(exe)
        assert resolver.cached_path == str(exe)

    @pytest.mark.asyncio
    async def test_missing_custom_path_falls_back_to_path(self, tmp_path):
        resolver = ExecutableResolver("claude", search_patterns=[], custom_path=str(tmp_path / "gone"))
        with patch("agentshift.util.executables.shutil.which", return_value="/usr/bin/claude"):
            assert await resolver.resolve() == "/usr/bin/claude"

    @pytest.mark.asyncio
    async def test_result_is_cached(self):
        resolver = ExecutableResolver("claude", search_patterns=[])
        with patch("agentshift.util.executables.shutil.which", return_value="/usr/bin/claude") as which:
            await resolver.resolve()
            await resolver.resolve()
        assert which.call_count == 1

    @pytest.mark.asyncio
    async def test_set_custom_path_resets_cache(self, tmp_path):
        exe = make_exe(tmp_path / "other")
        resolver = ExecutableResolver("claude", search_patterns=[])
        with patch("agentshift.util.executables.shutil.which", return_value="/usr/bin/claude"):
            await resolver.resolve()
        resolver.set_custom_path(str(exe))
        assert resolver.cached_path is None
        assert await resolver.resolve() == str(exe)

    @pytest.mark.asyncio
    async def test_glob_patterns_prefer_newest(self, tmp_path):
        make_exe(tmp_path / "v18.0.0" / "bin" / "gemini")
        newest = make_exe(tmp_path / "v20.1.0" / "bin" / "gemini")
        resolver = ExecutableResolver("gemini", search_patterns=[str(tmp_path / "*" / "bin" / "gemini")])
        with patch("agentshift.util.executables.shutil.which", return_value=None), patch(
            "agentshift.util.executables._login_shell_which", return_value=None
        ):
            assert await resolver.resolve() == str(newest)

    @pytest.mark.asyncio
    async def test_not_found(self):
        resolver = ExecutableResolver("definitely-not-installed", search_patterns=[])
        with patch("agentshift.util.executables.shutil.which", return_value=None), patch(
            "agentshift.util.executables._login_shell_which", return_value=None
        ):
            assert await resolver.resolve() is None
            version, error = await resolver.get_version()
        assert version is None
        assert "not found" in error

    @pytest.mark.asyncio
    async def test_version_of_running_interpreter(self):
        resolver = ExecutableResolver("python", search_patterns=[], custom_path=sys.executable)
        version, error = await resolver.get_version()
        assert error is None
        assert version.startswith(f"{sys.version_info.major}.{sys.version_info.minor}.")


class TestNodeManagerPaths:
    def test_detects_node_manager_paths(self):
        assert is_node_manager_path("/home/u/.nvm/versions/node/v20.1.0/bin/claude") is True
        assert is_node_manager_path("/usr/local/bin/claude") is False

    def test_runs_through_sibling_node(self, tmp_path):
        bin_dir = tmp_path / ".nvm" / "versions" / "node" / "v20.1.0" / "bin"
        cli = make_exe(bin_dir / "claude")
        node = make_exe(bin_dir / "node")
        assert find_node_binary(str(cli)) == str(node)
        assert resolve_cli_execution(str(cli)) == (str(node), [str(cli)])

    def test_plain_path_runs_directly(self):
        assert resolve_cli_execution("/usr/local/bin/claude") == ("/usr/local/bin/claude", [])
