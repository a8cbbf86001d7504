"""Supervisor process — owns one agent instance per domain.

The outer loop drives ``machine.transition``; every side effect (spawning,
markers, backoff sleeps, status writes) happens here. Only SIGTERM/SIGINT,
a clean agent exit, or SafeMode ends the loop.
"""

from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
import threading
import time
from datetime import datetime
from typing import Any, Callable, Optional, TextIO

from filelock import FileLock, Timeout

from lazarus.config import RecoveryConfig
from lazarus.defaults import ENV_DOMAIN, ENV_STATE_DIR, INSTANCE_LOCK_FILE
from lazarus.opslog import OpsLog
from lazarus.supervisor.control import SupervisorControl
from lazarus.supervisor.machine import (
    Event,
    Phase,
    SupervisorState,
    backoff_delay,
    build_launch_command,
    transition,
)
from lazarus.supervisor.markers import DomainMarkers

SAFE_MODE_HELP = """\
lazarus safe mode — the agent is NOT running and nothing typed here is executed.
  status   show supervisor status
  help     show this message
  quit     leave safe mode (the domain stays halted)
Recover with: lazarus reset {domain}
"""


def safe_mode_loop(domain: str, status: Callable[[], dict[str, Any]], stdin: TextIO, stdout: TextIO) -> None:
    """Inert read loop. Input is only ever compared against fixed words."""
    stdout.write(f"[{domain}] entered safe mode after repeated crashes\n")
    stdout.write(SAFE_MODE_HELP.format(domain=domain))
    stdout.flush()
    for line in stdin:
        word = line.strip().lower()
        if word == "status":
            stdout.write(json.dumps(status(), indent=2, default=str) + "\n")
        elif word in ("help", "?"):
            stdout.write(SAFE_MODE_HELP.format(domain=domain))
        elif word in ("quit", "exit"):
            break
        elif word:
            stdout.write("safe mode: input ignored (commands are never executed)\n")
        stdout.flush()


class Supervisor:
    def __init__(
        self,
        config: RecoveryConfig,
        domain: str,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
        instance_lock_timeout: float = 10.0,
    ) -> None:
        self.config = config
        self.domain_cfg = config.domain(domain)
        self.domain = domain
        self.settings = config.supervisor
        self.markers = DomainMarkers(config.state_dir, domain)
        self.control = SupervisorControl(
            config.state_dir, domain,
            crash_threshold=self.settings.crash_threshold,
            startup_grace_sec=self.settings.startup_grace_sec,
        )
        self.ops = OpsLog(config.ops_log_path)
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self.instance_lock_timeout = instance_lock_timeout

        self._stop_event = threading.Event()
        self._proc: Optional[subprocess.Popen] = None
        self._started_at = 0.0
        self._in_safe_mode = False
        self.launches: list[list[str]] = []

    # -- entry --------------------------------------------------------------

    def run(self) -> Optional[Phase]:
        """Supervise until CleanExit or SafeMode. Returns the final phase, or None
        if another supervisor already owns the domain."""
        self.config.ensure_runtime_dirs()
        lock_path = self.markers.dir / INSTANCE_LOCK_FILE
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        instance = FileLock(str(lock_path))
        try:
            instance.acquire(timeout=self.instance_lock_timeout)
        except Timeout:
            self._log("another supervisor owns this domain; exiting")
            return None

        previous_handlers: dict[int, Any] = {}
        try:
            if threading.current_thread() is threading.main_thread():
                for signum in (signal.SIGTERM, signal.SIGINT):
                    previous_handlers[signum] = signal.signal(signum, self._handle_signal)
            return self._loop()
        finally:
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)
            self.control.update(pid=None, child_pid=None)
            instance.release()

    def _loop(self) -> Phase:
        previous = self.control.status()
        if previous.phase is Phase.SAFE_MODE:
            state = previous.state
        else:
            state = SupervisorState(Phase.STARTING, previous.crash_count if previous.phase is Phase.STARTING else 0)
        self._log(f"starting supervisor (crash_count={state.crash_count})")

        while True:
            self._publish(state)
            if state.phase is Phase.STARTING:
                if self._stop_event.is_set():
                    state = self._transition(state, Event.STOPPED)
                    continue
                state = self._start(state)
            elif state.phase is Phase.RUNNING:
                state = self._wait(state)
            elif state.phase is Phase.CRASHED_RETRY:
                delay = backoff_delay(state.crash_count, self.settings.retry_backoff_sec, self.settings.retry_backoff_max_sec)
                self._log(f"crash #{state.crash_count}; backing off {delay:g}s")
                if self._stop_event.wait(timeout=delay):
                    state = self._transition(state, Event.STOPPED)
                else:
                    state = self._transition(state, Event.BACKOFF_ELAPSED)
            elif state.phase is Phase.CLEAN_EXIT:
                self._log("clean exit; supervisor stopped")
                return state.phase
            elif state.phase is Phase.SAFE_MODE:
                self.ops.record(
                    "safe_mode", "error", domain=self.domain,
                    crash_count=state.crash_count, threshold=self.settings.crash_threshold,
                )
                self._log(f"entering safe mode after {state.crash_count} crashes")
                self._in_safe_mode = True
                safe_mode_loop(
                    self.domain,
                    lambda: self.control.status().to_dict(),
                    self.stdin,
                    self.stdout,
                )
                return state.phase

    # -- phases -------------------------------------------------------------

    def _transition(self, state: SupervisorState, event: Event) -> SupervisorState:
        return transition(state, event, self.settings.crash_threshold)

    def _start(self, state: SupervisorState) -> SupervisorState:
        fresh = self.markers.consume_fresh_start()
        # A new instance supersedes whatever clean stop came before it.
        self.markers.consume_clean_exit()
        token = None if fresh else self.markers.load_token()
        cmd = build_launch_command(self.domain_cfg.command, token, self.domain_cfg.resume_flag)
        if fresh:
            self._log("fresh-start marker consumed; ignoring saved continuation token")
        self._log(f"exec: {' '.join(cmd)}")
        self.launches.append(cmd)

        env = {**os.environ, ENV_DOMAIN: self.domain, ENV_STATE_DIR: str(self.config.state_dir)}
        try:
            self._proc = subprocess.Popen(cmd, env=env)
        except OSError as exc:
            self._log(f"failed to launch {cmd[0]}: {exc}")
            self.markers.clear_token()
            self.ops.record("agent_launch_failed", "error", domain=self.domain, error=str(exc))
            return self._transition(state, Event.EXITED_FAIL)

        self._started_at = time.monotonic()
        self.control.update(child_pid=self._proc.pid)
        self.ops.record("agent_start", "ok", domain=self.domain, resumed=bool(token), fresh=fresh)
        return self._transition(state, Event.LAUNCHED)

    def _wait(self, state: SupervisorState) -> SupervisorState:
        assert self._proc is not None
        code = self._proc.wait()
        runtime = time.monotonic() - self._started_at
        self._proc = None
        clean = code == 0 or self._stop_event.is_set()
        if clean:
            # Before childPid is cleared, so no monitor tick sees a dead agent without it.
            self.markers.mark_clean_exit()
        self.control.update(child_pid=None)

        if clean:
            self.ops.record("agent_exit", "ok", domain=self.domain, exit_code=code)
            self._log(f"agent exited cleanly (exit {code})")
            return self._transition(state, Event.EXITED_OK)

        if runtime >= self.settings.stable_after_sec:
            state = self._transition(state, Event.STABILIZED)
        self.markers.clear_token()
        self.ops.record("agent_crash", "warn", domain=self.domain, exit_code=code, runtime_sec=round(runtime, 1))
        self._log(f"agent crashed (exit {code}) after {runtime:.1f}s; continuation token cleared")
        return self._transition(state, Event.EXITED_FAIL)

    # -- plumbing -----------------------------------------------------------

    def _publish(self, state: SupervisorState) -> None:
        self.control.update(
            phase=state.phase,
            crash_count=state.crash_count,
            pid=os.getpid(),
            requested_at=None,
        )

    def stop(self) -> None:
        self._stop_event.set()
        proc = self._proc
        if proc is not None and proc.poll() is None:
            proc.terminate()

    def _handle_signal(self, signum: int, _frame: Any) -> None:
        self._log(f"received signal {signum}, shutting down")
        if self._in_safe_mode:
            # The read loop would resume after the handler; leave it outright.
            raise SystemExit(0)
        self.stop()

    def _log(self, message: str) -> None:
        ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        print(f"[{ts}] [{self.domain}] {message}", file=self.stdout, flush=True)
