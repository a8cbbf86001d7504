"""Recovery Coordinator — lifecycle hook entry points and the agent's task-update calls.

    on_session_start  — recovery payload for the new instance's initial context
    on_activity       — best-effort heartbeat (lastActive = now)
    on_session_end    — one ops event; never touches AgentState

The end hook does not change status: on a hard crash it never fires, so
status transitions belong to task updates and to the liveness monitor.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from lazarus.config import RecoveryConfig
from lazarus.defaults import BRIEF_FILE, domain_dir
from lazarus.fs import read_text_file, utc_now
from lazarus.models import AgentState, OpenLoop, ResolutionLogEntry, Status
from lazarus.opslog import OpsLog
from lazarus.resolutions import ResolutionLog
from lazarus.store import StateStore, update_with_retry
from lazarus.supervisor.markers import DomainMarkers

log = logging.getLogger(__name__)

RECOVER_STATUSES = (Status.WORKING, Status.ERROR)


@dataclass(frozen=True)
class RecoveryPayload:
    domain: str
    status: Optional[Status] = None
    current_task: str = ""
    open_loops: int = 0
    fresh_open_loops: int = 0
    last_active: Optional[datetime] = None
    brief: str = ""

    @property
    def recovering(self) -> bool:
        return self.status in RECOVER_STATUSES

    def render(self) -> str:
        parts: list[str] = []
        if self.recovering:
            assert self.status is not None
            stale = self.open_loops - self.fresh_open_loops
            lines = [
                f"## Recovered session state ({self.domain})",
                "The previous session ended without finishing. Continue from here.",
                f"status: {self.status.value}",
                f"current task: {self.current_task or '(none recorded)'}",
                f"open loops: {self.open_loops} ({self.fresh_open_loops} active, {stale} stale)",
            ]
            if self.last_active:
                lines.append(f"last active: {self.last_active.isoformat()}")
            parts.append("\n".join(lines))
        if self.brief.strip():
            parts.append("## Latest brief\n" + self.brief.strip())
        return "\n\n".join(parts) + ("\n" if parts else "")


class RecoveryCoordinator:
    def __init__(self, config: RecoveryConfig) -> None:
        self.config = config
        self.ops = OpsLog(config.ops_log_path)
        self.store = StateStore(config.state_dir, ops=self.ops)

    def _brief_path(self, domain: str) -> Path:
        return domain_dir(self.config.state_dir, domain) / BRIEF_FILE

    # -- lifecycle hooks ----------------------------------------------------

    def build_payload(self, domain: str, now: Optional[datetime] = None) -> Optional[RecoveryPayload]:
        """Recovery payload from current state, or None if no (valid) state exists."""
        state = self.store.load(domain, now=now)
        if state is None:
            return None
        return RecoveryPayload(
            domain=domain,
            status=state.status,
            current_task=state.current_task,
            open_loops=len(state.open_loops),
            fresh_open_loops=len(state.fresh_loops()),
            last_active=state.last_active,
            brief=read_text_file(self._brief_path(domain)),
        )

    def on_session_start(self, domain: str, session_id: Optional[str] = None, now: Optional[datetime] = None) -> str:
        """Text to inject into the new instance's context. Empty on first run."""
        if session_id:
            DomainMarkers(self.config.state_dir, domain).save_token(session_id)
        payload = self.build_payload(domain, now=now)
        if payload is None:
            # First run (or unreadable state): create the document, inject nothing.
            try:
                self.store.atomic_update(domain, lambda s: s, now=now)
            except (OSError, ValueError) as exc:
                log.warning("could not create state for %s: %s", domain, exc)
            self.ops.record("session_start", "ok", domain=domain, recovered=False, now=now)
            return ""
        self.ops.record("session_start", "ok", domain=domain, recovered=payload.recovering, now=now)
        return payload.render()

    def on_activity(self, domain: str, timeout: Optional[float] = None, now: Optional[datetime] = None) -> bool:
        """Fire-and-forget heartbeat. Returns True only if the write finished in time.

        The update runs on a daemon thread with a short lock timeout; if it has
        not finished when ``timeout`` expires the caller moves on and the
        thread is abandoned. A missed heartbeat is never an error.
        """
        limit = self.config.hooks.heartbeat_timeout_sec if timeout is None else timeout
        done = threading.Event()

        def _beat() -> None:
            try:
                self.store.atomic_update(domain, lambda s: s.touch(now), timeout=limit, now=now)
                done.set()
            except Exception as exc:  # heartbeat is best-effort by contract
                log.debug("heartbeat for %s dropped: %s", domain, exc)

        worker = threading.Thread(target=_beat, name=f"heartbeat-{domain}", daemon=True)
        worker.start()
        worker.join(timeout=limit)
        return done.is_set()

    def on_session_end(self, domain: str, exit_status: Optional[int] = None, now: Optional[datetime] = None) -> None:
        status = "ok" if exit_status in (None, 0) else "warn"
        self.ops.record("session_end", status, domain=domain, exit_status=exit_status, now=now)

    # -- agent task-update calls --------------------------------------------

    def update_task(
        self,
        domain: str,
        status: Optional[Status | str] = None,
        current_task: Optional[str] = None,
        numbers: Optional[dict[str, str]] = None,
        now: Optional[datetime] = None,
    ) -> AgentState:
        new_status = Status.parse(status) if status is not None else None

        def _apply(state: AgentState) -> None:
            if new_status is not None:
                state.status = new_status
            if current_task is not None:
                state.current_task = current_task
            if numbers:
                state.numbers.update({str(k): str(v) for k, v in numbers.items()})

        return update_with_retry(self.store, domain, _apply, now=now)

    def add_loop(self, domain: str, text: str, loop_id: Optional[str] = None, now: Optional[datetime] = None) -> OpenLoop:
        loop = OpenLoop(id=loop_id or uuid.uuid4().hex[:8], text=text, added=(now or utc_now()).date())

        def _apply(state: AgentState) -> None:
            if not state.add_loop(loop):
                raise ValueError(f"loop id '{loop.id}' is already open or resolved in '{domain}'")

        update_with_retry(self.store, domain, _apply, now=now)
        return loop

    def resolve_loop(self, domain: str, loop_id: str, reason: str, now: Optional[datetime] = None) -> ResolutionLogEntry:
        """Record a completion. The state document picks it up at the next reconciliation."""
        return ResolutionLog(self.config.state_dir, domain).append(loop_id, reason, now=now)
