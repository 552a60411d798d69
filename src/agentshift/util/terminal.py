"""Open an interactive terminal window running a command.

Used only for interactive reauthentication when an agent offers no
programmatic login flow.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Sequence

logger = logging.getLogger(__name__)

_LINUX_TERMINALS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("x-terminal-emulator", ("-e",)),
    ("gnome-terminal", ("--",)),
    ("konsole", ("-e",)),
    ("xfce4-terminal", ("-x",)),
    ("xterm", ("-e",)),
)


class TerminalLauncher:
    """Starts ``command`` in a new terminal window without waiting for it."""

    def _build_argv(self, command: Sequence[str], cwd: Path | None) -> list[str] | None:
        shell_cmd = shlex.join(command)
        if cwd is not None:
            shell_cmd = f"cd {shlex.quote(str(cwd))} && {shell_cmd}"

        if sys.platform == "darwin":
            script = f'tell application "Terminal" to do script {_applescript_quote(shell_cmd)}'
            return ["osascript", "-e", script, "-e", 'tell application "Terminal" to activate']

        if sys.platform == "win32":
            return ["cmd", "/c", "start", "cmd", "/k", subprocess.list2cmdline(list(command))]

        for terminal, exec_flag in _LINUX_TERMINALS:
            if shutil.which(terminal):
                return [terminal, *exec_flag, "bash", "-lc", f"{shell_cmd}; exec bash"]
        return None

    def launch(self, command: Sequence[str], cwd: Path | None = None) -> tuple[bool, str | None]:
        """Open a terminal running ``command``.

        Returns:
            ``(success, error)``
        """
        argv = self._build_argv(command, cwd)
        if argv is None:
            return False, "No terminal emulator found"
        try:
            subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd and sys.platform == "win32" else None,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=os.name != "nt",
            )
        except OSError as e:
            logger.warning("Could not open terminal for %s: %s", command[0], e)
            return False, str(e)
        logger.info("Opened terminal for %s", shlex.join(command))
        return True, None


def _applescript_quote(value: str) -> str:
    """Quote a string for embedding in AppleScript source."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
