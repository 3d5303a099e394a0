"""Terminal session manager interface and its tmux implementation.

The supervisor only issues commands to sessions; it never reads or writes
terminal I/O beyond sending keys.
"""

from __future__ import annotations

import subprocess
import time
from pathlib import Path
from typing import Protocol


class SessionError(Exception):
    """A terminal session command failed."""

    pass


class TerminalSessions(Protocol):
    """Commands the supervisor issues to the terminal session manager."""

    def has_session(self, name: str) -> bool: ...

    def new_session(self, name: str, work_dir: Path) -> None: ...

    def kill_session(self, name: str) -> None: ...

    def kill_session_with_processes(self, name: str) -> None: ...

    def send_keys(self, name: str, keys: str) -> None: ...

    def nudge_session(self, name: str, message: str) -> None: ...

    def set_environment(self, name: str, key: str, value: str) -> None: ...


class TmuxSessions:
    """TerminalSessions backed by the tmux CLI."""

    TMUX_TIMEOUT = 10
    # Pause between typing text and pressing Enter so the pane receives it.
    ENTER_DELAY = 0.5

    def __init__(self, socket: str | None = None):
        self.socket = socket

    def _cmd_prefix(self) -> list[str]:
        if self.socket:
            return ["tmux", "-L", self.socket]
        return ["tmux"]

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = self._cmd_prefix() + list(args)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.TMUX_TIMEOUT,
            )
        except subprocess.TimeoutExpired as e:
            raise SessionError(f"tmux {args[0]} timed out after {self.TMUX_TIMEOUT}s") from e
        except FileNotFoundError as e:
            raise SessionError("tmux executable not found") from e

        if check and result.returncode != 0:
            raise SessionError(f"tmux {' '.join(args)} failed: {result.stderr.strip()}")
        return result

    def has_session(self, name: str) -> bool:
        # "=" forces an exact match instead of tmux's prefix matching
        result = self._run("has-session", "-t", f"={name}", check=False)
        if result.returncode == 0:
            return True
        stderr = result.stderr.lower()
        if "can't find session" in stderr or "no server running" in stderr or "error connecting" in stderr:
            return False
        raise SessionError(f"tmux has-session {name} failed: {result.stderr.strip()}")

    def new_session(self, name: str, work_dir: Path) -> None:
        self._run("new-session", "-d", "-s", name, "-c", str(work_dir))

    def kill_session(self, name: str) -> None:
        self._run("kill-session", "-t", f"={name}")

    def kill_session_with_processes(self, name: str) -> None:
        """Kill every process in the session's panes, then the session.

        Plain kill-session leaves orphaned children when a pane's process
        ignores SIGHUP.
        """
        result = self._run("list-panes", "-s", "-t", f"={name}", "-F", "#{pane_pid}", check=False)
        if result.returncode == 0:
            for pid in result.stdout.split():
                # children first, then the pane process itself
                subprocess.run(["pkill", "-TERM", "-P", pid], capture_output=True)
                subprocess.run(["kill", "-TERM", pid], capture_output=True)
        self.kill_session(name)

    def send_keys(self, name: str, keys: str) -> None:
        self._run("send-keys", "-t", f"={name}", "-l", keys)
        time.sleep(self.ENTER_DELAY if "\n" in keys else 0.1)
        self._run("send-keys", "-t", f"={name}", "Enter")

    def nudge_session(self, name: str, message: str) -> None:
        """Type a message into a live session without disturbing it.

        Escape first exits any pending mode so the message lands on a clean
        input line.
        """
        self._run("send-keys", "-t", f"={name}", "Escape")
        self.send_keys(name, message)

    def set_environment(self, name: str, key: str, value: str) -> None:
        self._run("set-environment", "-t", f"={name}", key, value)
