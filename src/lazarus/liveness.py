"""Process-existence oracles — the monitor's ground truth for "is the agent alive?".

Neither oracle looks at AgentState. ``PidLiveness`` reads the agent pid the
supervisor recorded; ``TmuxLiveness`` walks the process tree under a tmux
session's panes.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Optional, Protocol

from lazarus.defaults import SUPERVISOR_STATUS_FILE, domain_dir

log = logging.getLogger(__name__)


class LivenessCheck(Protocol):
    def __call__(self, domain: str) -> bool: ...


def pid_alive(pid: Optional[int]) -> bool:
    """True if pid exists and is not a zombie."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by someone else
    try:
        proc = subprocess.run(
            ["ps", "-p", str(pid), "-o", "stat="],
            capture_output=True, text=True, timeout=2,
        )
    except (OSError, subprocess.TimeoutExpired):
        return True
    if proc.returncode != 0:
        return False
    return not proc.stdout.strip().startswith("Z")


class PidLiveness:
    """Agent is alive iff the child pid in supervisor.json is a live process."""

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir)

    def child_pid(self, domain: str) -> Optional[int]:
        path = domain_dir(self.state_dir, domain) / SUPERVISOR_STATUS_FILE
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        pid = payload.get("childPid") if isinstance(payload, dict) else None
        return pid if isinstance(pid, int) else None

    def __call__(self, domain: str) -> bool:
        return pid_alive(self.child_pid(domain))


class TmuxLiveness:
    """Agent is alive iff some pane of the domain's tmux session has a live child process.

    The pane's own shell does not count: an idle shell left behind after the
    agent exits is exactly the "dead" case.
    """

    def __init__(self, sessions: dict[str, str] | None = None) -> None:
        self.sessions = sessions or {}

    def _pane_pids(self, session: str) -> list[int]:
        try:
            r = subprocess.run(
                ["tmux", "list-panes", "-s", "-t", session, "-F", "#{pane_pid}"],
                capture_output=True, text=True, timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            log.warning("tmux list-panes failed for %s: %s", session, exc)
            return []
        if r.returncode != 0:
            return []
        return [int(line) for line in r.stdout.split() if line.strip().isdigit()]

    def _children(self, pid: int) -> list[int]:
        try:
            r = subprocess.run(["pgrep", "-P", str(pid)], capture_output=True, text=True, timeout=5)
        except (OSError, subprocess.TimeoutExpired):
            return []
        return [int(line) for line in r.stdout.split() if line.strip().isdigit()]

    def __call__(self, domain: str) -> bool:
        session = self.sessions.get(domain, domain)
        for pane_pid in self._pane_pids(session):
            if any(pid_alive(child) for child in self._children(pane_pid)):
                return True
        return False
