"""Supervisor status file and the restart/reset instructions other processes send.

``supervisor.json`` is the supervisor's published state. Anything outside the
supervisor process (monitor, operator CLI) reads it and asks for a restart
through ``SupervisorControl``, which runs the same transition function the
supervisor uses, so a redundant request is a no-op rather than a second agent.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from filelock import FileLock

from lazarus.defaults import ENV_STATE_DIR, SUPERVISOR_STATUS_FILE, domain_dir
from lazarus.fs import atomic_write_json, utc_now
from lazarus.liveness import pid_alive
from lazarus.models import parse_timestamp
from lazarus.supervisor.machine import ACTIVE_PHASES, Event, Phase, SupervisorState, transition

log = logging.getLogger(__name__)

Spawner = Callable[[str], None]


@dataclass(frozen=True)
class SupervisorStatus:
    # No supervisor has ever run for the domain: equivalent to a clean stop.
    phase: Phase = Phase.CLEAN_EXIT
    crash_count: int = 0
    pid: Optional[int] = None
    child_pid: Optional[int] = None
    requested_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def state(self) -> SupervisorState:
        return SupervisorState(self.phase, self.crash_count)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "crashCount": self.crash_count,
            "pid": self.pid,
            "childPid": self.child_pid,
            "requestedAt": self.requested_at.isoformat() if self.requested_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SupervisorStatus:
        def _int(key: str) -> Optional[int]:
            value = data.get(key)
            return value if isinstance(value, int) else None

        def _ts(key: str) -> Optional[datetime]:
            value = data.get(key)
            return parse_timestamp(value) if value else None

        return cls(
            phase=Phase(data.get("phase", Phase.CLEAN_EXIT.value)),
            crash_count=int(data.get("crashCount", 0)),
            pid=_int("pid"),
            child_pid=_int("childPid"),
            requested_at=_ts("requestedAt"),
            updated_at=_ts("updatedAt"),
        )


class SupervisorControl:
    def __init__(
        self,
        state_dir: str | Path,
        domain: str,
        crash_threshold: int = 5,
        startup_grace_sec: float = 120.0,
        spawner: Optional[Spawner] = None,
    ) -> None:
        self.domain = domain
        self.state_dir = Path(state_dir)
        self.path = domain_dir(self.state_dir, domain) / SUPERVISOR_STATUS_FILE
        self.crash_threshold = crash_threshold
        self.startup_grace_sec = startup_grace_sec
        self.spawner = spawner

    def _lock(self) -> FileLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.path) + ".lock", timeout=5)

    def _read(self) -> SupervisorStatus:
        try:
            return SupervisorStatus.from_dict(json.loads(self.path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return SupervisorStatus()
        except (ValueError, TypeError) as exc:
            log.error("supervisor status for %s is malformed, treating as stopped: %s", self.domain, exc)
            return SupervisorStatus()

    def _write(self, status: SupervisorStatus) -> SupervisorStatus:
        status = replace(status, updated_at=utc_now())
        atomic_write_json(self.path, status.to_dict())
        return status

    def status(self) -> SupervisorStatus:
        return self._read()

    def update(self, **changes: Any) -> SupervisorStatus:
        """Read-modify-write the status under its lock."""
        with self._lock():
            return self._write(replace(self._read(), **changes))

    def supervisor_alive(self, status: Optional[SupervisorStatus] = None) -> bool:
        status = status or self._read()
        return pid_alive(status.pid)

    # -- instructions -------------------------------------------------------

    def request_restart(self, now: Optional[datetime] = None) -> str:
        """Ask for the agent to be started. Returns "spawned", "safe_mode" or "noop:<reason>"."""
        now = now or utc_now()
        with self._lock():
            status = self._read()
            if self.supervisor_alive(status):
                # A live supervisor owns its own restarts; the machine decides.
                nxt = transition(status.state, Event.RESTART_REQUESTED, self.crash_threshold)
                if nxt == status.state:
                    return f"noop:{status.phase.value}"
                # Alive in CleanExit only while it is shutting down.
                return "noop:shutting_down"
            if status.phase is Phase.SAFE_MODE:
                return "noop:safe_mode"
            if status.phase is Phase.STARTING and status.requested_at is not None:
                if (now - status.requested_at).total_seconds() < self.startup_grace_sec:
                    return "noop:start_pending"
            if status.phase in ACTIVE_PHASES:
                # Supervisor died along with its agent: count the crash it never recorded.
                crashed = transition(
                    SupervisorState(Phase.RUNNING, status.crash_count), Event.EXITED_FAIL, self.crash_threshold,
                )
                if crashed.phase is Phase.SAFE_MODE:
                    self._write(replace(
                        status, phase=crashed.phase, crash_count=crashed.crash_count,
                        pid=None, child_pid=None, requested_at=None,
                    ))
                    return "safe_mode"
                nxt = transition(crashed, Event.BACKOFF_ELAPSED, self.crash_threshold)
            else:
                nxt = transition(status.state, Event.RESTART_REQUESTED, self.crash_threshold)
            self._write(replace(
                status, phase=nxt.phase, crash_count=nxt.crash_count,
                pid=None, child_pid=None, requested_at=now,
            ))
        self._spawn()
        return "spawned"

    def reset(self, now: Optional[datetime] = None) -> str:
        """Operator intervention: leave SafeMode and start a fresh supervisor."""
        now = now or utc_now()
        with self._lock():
            status = self._read()
            if status.phase is not Phase.SAFE_MODE:
                return f"noop:{status.phase.value}"
            if self.supervisor_alive(status) and status.pid:
                # The safe-mode read loop holds the instance lock; end it first.
                try:
                    os.kill(status.pid, signal.SIGTERM)
                except ProcessLookupError:
                    pass
            nxt = transition(status.state, Event.OPERATOR_RESET, self.crash_threshold)
            self._write(replace(
                status, phase=nxt.phase, crash_count=nxt.crash_count,
                pid=None, child_pid=None, requested_at=now,
            ))
        self._spawn()
        return "spawned"

    def stop(self) -> str:
        """SIGTERM a live supervisor; it forwards to the agent and exits cleanly."""
        status = self._read()
        if not self.supervisor_alive(status) or not status.pid:
            return "noop:not_running"
        os.kill(status.pid, signal.SIGTERM)
        return "signalled"

    def _spawn(self) -> None:
        if self.spawner is None:
            raise RuntimeError(f"no supervisor spawner configured for '{self.domain}'")
        self.spawner(self.domain)


def detached_spawner(state_dir: str | Path, config_path: Optional[str | Path] = None) -> Spawner:
    """Spawner that forks ``lazarus supervise <domain>`` in its own session."""

    def _spawn(domain: str) -> None:
        lazarus_bin = shutil.which("lazarus")
        if not lazarus_bin:
            raise FileNotFoundError("cannot start a supervisor: no 'lazarus' executable on PATH")
        log_file = domain_dir(Path(state_dir), domain) / "supervisor.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)
        cmd = [lazarus_bin]
        if config_path:
            cmd += ["--config", str(config_path)]
        cmd += ["supervise", domain]
        env = {**os.environ, ENV_STATE_DIR: str(state_dir)}
        with open(log_file, "a") as log_fp:
            log_fp.write(f"[supervisor-launch] bin={lazarus_bin} domain={domain}\n")
            log_fp.flush()
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_fp,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                env=env,
            )
            # A supervisor that cannot load config exits within this window.
            time.sleep(0.5)
            if proc.poll() is not None and proc.returncode != 0:
                raise RuntimeError(
                    f"supervisor for {domain} exited at startup with code {proc.returncode}; see {log_file}"
                )

    return _spawn
