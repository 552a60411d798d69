"""Locate installed agent CLIs on the host.

Lookup order: a user-configured custom path, ``PATH``, a login shell (which
picks up PATH edits from shell profiles that a GUI-launched process never
sees), then well-known install directories. Results are cached per resolver.
"""

from __future__ import annotations

import asyncio
import glob
import logging
import os
import re
import shutil
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

VERSION_RE = re.compile(r"(\d+\.\d+\.\d+(?:-[a-z0-9.]+)?)", re.IGNORECASE)

LOGIN_SHELL_TIMEOUT = 5.0
VERSION_TIMEOUT = 10.0

_NODE_MANAGER_MARKERS = (".nvm", ".fnm", ".volta", ".asdf", "nvm")


def default_search_patterns(name: str) -> list[str]:
    """Well-known install locations for an npm-distributed CLI called ``name``."""
    home = os.path.expanduser("~")
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA", os.path.join(home, "AppData", "Roaming"))
        local_appdata = os.environ.get("LOCALAPPDATA", os.path.join(home, "AppData", "Local"))
        nvm_home = os.environ.get("NVM_HOME", os.path.join(appdata, "nvm"))
        return [
            os.path.join(appdata, "npm", f"{name}.cmd"),
            os.path.join(appdata, "npm", name),
            os.path.join(local_appdata, "npm", f"{name}.cmd"),
            os.path.join(os.environ.get("PROGRAMFILES", "C:\\Program Files"), "nodejs", f"{name}.cmd"),
            os.path.join(nvm_home, "*", f"{name}.cmd"),
            os.path.join(home, "scoop", "shims", f"{name}.cmd"),
        ]
    return [
        f"/usr/local/bin/{name}",
        f"/usr/bin/{name}",
        f"/opt/homebrew/bin/{name}",
        f"{home}/.local/bin/{name}",
        f"{home}/.npm-global/bin/{name}",
        f"{home}/.yarn/bin/{name}",
        f"{home}/.local/share/pnpm/{name}",
        f"{home}/.nvm/versions/node/*/bin/{name}",
        f"{home}/.volta/bin/{name}",
        f"{home}/.fnm/node-versions/*/installation/bin/{name}",
        f"{home}/.asdf/installs/nodejs/*/bin/{name}",
        f"{home}/bin/{name}",
    ]


def is_node_manager_path(path: str) -> bool:
    return any(marker in path for marker in _NODE_MANAGER_MARKERS)


def find_node_binary(cli_path: str) -> str | None:
    """Find the node binary that belongs to a CLI installed under a node manager."""
    lib_match = re.match(
        r"(.+[/\\](?:\.nvm|\.fnm|\.volta|\.asdf)[/\\]"
        r"(?:versions[/\\]node[/\\]|node-versions[/\\]|installs[/\\]nodejs[/\\])?"
        r"v?[\d.]+(?:[/\\]installation)?)[/\\]lib[/\\]node_modules[/\\]",
        cli_path,
        re.IGNORECASE,
    )
    if lib_match:
        candidate = Path(lib_match.group(1)) / "bin" / "node"
        if candidate.exists():
            return str(candidate)

    bin_dir = Path(cli_path).parent
    if bin_dir.name == "bin" and is_node_manager_path(cli_path):
        candidate = bin_dir / "node"
        if candidate.exists():
            return str(candidate)

    return None


def resolve_cli_execution(cli_path: str) -> tuple[str, list[str]]:
    """Return ``(command, prepend_args)`` for running ``cli_path``.

    A CLI installed under nvm/fnm/volta/asdf is a node script whose shebang
    may not find ``node`` on a minimal PATH, so it is run through the node
    binary from the same installation when one exists.
    """
    if is_node_manager_path(cli_path):
        node = find_node_binary(cli_path)
        if node:
            return node, [cli_path]
    return cli_path, []


async def _login_shell_which(shell: str, name: str) -> str | None:
    if not shutil.which(shell):
        return None
    try:
        proc = await asyncio.create_subprocess_exec(
            shell,
            "-l",
            "-c",
            f"which {name}",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return None
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=LOGIN_SHELL_TIMEOUT)
    except asyncio.TimeoutError:
        proc.kill()
        return None
    if proc.returncode != 0:
        return None
    lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
    path = lines[-1].strip() if lines else ""
    if path and os.path.exists(path):
        return path
    return None


class ExecutableResolver:
    """Cached lookup of one CLI executable.

    Args:
        name: Command name to look up (e.g. ``claude``, ``gemini``)
        search_patterns: Extra locations (glob patterns allowed); defaults to
            :func:`default_search_patterns`
        custom_path: Explicit path that overrides auto-detection
    """

    def __init__(
        self,
        name: str,
        search_patterns: list[str] | None = None,
        custom_path: str | None = None,
    ):
        self.name = name
        self.search_patterns = search_patterns if search_patterns is not None else default_search_patterns(name)
        self.custom_path = custom_path
        self._cached: str | None = None

    @property
    def cached_path(self) -> str | None:
        return self._cached

    def set_custom_path(self, path: str | None) -> None:
        """Override auto-detection; ``None`` restores it. Always drops the cache."""
        self.custom_path = path
        self._cached = None

    def _search_known_locations(self) -> str | None:
        for pattern in self.search_patterns:
            if any(ch in pattern for ch in "*?["):
                # Newest version directory first
                for match in sorted(glob.glob(pattern), reverse=True):
                    if os.path.isfile(match):
                        return match
            elif os.path.isfile(pattern):
                return pattern
        return None

    async def resolve(self) -> str | None:
        """Resolve and cache the executable path, or return None if not found."""
        if self._cached:
            return self._cached

        path = None
        if self.custom_path:
            if os.path.exists(self.custom_path):
                path = self.custom_path
            else:
                logger.warning("Custom path for %s does not exist: %s", self.name, self.custom_path)

        if path is None:
            path = shutil.which(self.name)

        if path is None and sys.platform != "win32":
            path = await _login_shell_which("bash", self.name)
            if path is None and sys.platform == "darwin":
                path = await _login_shell_which("zsh", self.name)

        if path is None:
            path = self._search_known_locations()

        if path:
            logger.debug("Resolved %s executable: %s", self.name, path)
            self._cached = path
        else:
            logger.debug("%s executable not found", self.name)
        return path

    async def get_version(self) -> tuple[str | None, str | None]:
        """Run ``<exe> --version``.

        Returns:
            ``(version, error)``; exactly one of them is set
        """
        path = await self.resolve()
        if not path:
            return None, f"{self.name} CLI not found"

        command, prepend = resolve_cli_execution(path)
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *prepend,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return None, str(e)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=VERSION_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            return None, f"{self.name} --version timed out"

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            return None, detail or f"{self.name} --version exited with code {proc.returncode}"

        output = stdout.decode("utf-8", errors="replace").strip()
        match = VERSION_RE.search(output)
        return (match.group(1) if match else output or "unknown"), None
