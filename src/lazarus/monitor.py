"""Liveness Monitor — periodic process-existence check and restart arbitration.

Decision table, per domain:

    process alive   clean-exit marker   action
    yes             —                   none (healthy)
    no              yes                 consume marker, none (intentional stop)
    no              no                  request restart

The oracle decides "alive"; AgentState.status is never consulted for it.
Every run also recomputes open-loop staleness and persists it if it moved.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from lazarus.config import RecoveryConfig
from lazarus.errors import LazarusError
from lazarus.liveness import LivenessCheck, PidLiveness, TmuxLiveness
from lazarus.models import AgentState, Status
from lazarus.opslog import OpsLog
from lazarus.store import StateStore, update_with_retry
from lazarus.supervisor.control import Spawner, SupervisorControl, detached_spawner
from lazarus.supervisor.markers import DomainMarkers

log = logging.getLogger(__name__)

HEALTHY = "healthy"
INTENTIONAL_STOP = "intentional_stop"
RESTART = "restart"


def decide(alive: bool, clean_exit: bool) -> str:
    if alive:
        return HEALTHY
    if clean_exit:
        return INTENTIONAL_STOP
    return RESTART


class LivenessMonitor:
    def __init__(
        self,
        config: RecoveryConfig,
        liveness: Optional[LivenessCheck] = None,
        spawner: Optional[Spawner] = None,
    ) -> None:
        self.config = config
        self.ops = OpsLog(config.ops_log_path)
        self.store = StateStore(config.state_dir, ops=self.ops)
        self._liveness = liveness
        self.spawner = spawner or detached_spawner(config.state_dir, config.config_path)

    def domains(self) -> list[str]:
        return sorted(set(self.config.domains) | set(self.store.domains()))

    def _check_alive(self, domain: str) -> bool:
        if self._liveness is not None:
            return self._liveness(domain)
        domain_cfg = self.config.domain(domain)
        if domain_cfg.liveness == "tmux":
            return TmuxLiveness({domain: domain_cfg.session})(domain)
        return PidLiveness(self.config.state_dir)(domain)

    def control(self, domain: str) -> SupervisorControl:
        return SupervisorControl(
            self.config.state_dir, domain,
            crash_threshold=self.config.supervisor.crash_threshold,
            startup_grace_sec=self.config.supervisor.startup_grace_sec,
            spawner=self.spawner,
        )

    def check_domain(self, domain: str, now: Optional[datetime] = None) -> dict[str, Any]:
        result: dict[str, Any] = {"domain": domain}
        alive = self._check_alive(domain)
        markers = DomainMarkers(self.config.state_dir, domain)
        decision = decide(alive, markers.clean_exit_present())
        result["alive"] = alive
        result["decision"] = decision

        if decision == INTENTIONAL_STOP:
            markers.consume_clean_exit()
        elif decision == RESTART:
            result["restart"] = self.control(domain).request_restart(now=now)

        result["stale_changed"] = self._refresh_state(domain, crashed=decision == RESTART, now=now)
        restart = result.get("restart")
        if restart == "safe_mode":
            log.error("%s reached the crash threshold without a live supervisor; safe mode", domain)
            status = "error"
        else:
            status = "warn" if restart == "spawned" else "ok"
        self.ops.record("monitor_check", status, domain=domain, now=now, **{k: v for k, v in result.items() if k != "domain"})
        return result

    def _refresh_state(self, domain: str, crashed: bool, now: Optional[datetime]) -> bool:
        """Persist staleness (and Working -> Error on a crash) only when something moved."""
        state = self.store.load(domain, now=now)
        if state is None:
            return False
        needs_error = crashed and state.status is Status.WORKING
        # load() already recomputed the flags; compare with what is on disk.
        stale_moved = _stale_on_disk(self.store, domain) != {l.id: l.stale for l in state.open_loops}
        if not (stale_moved or needs_error):
            return False

        def _apply(s: AgentState) -> None:
            s.refresh_staleness(now)
            if needs_error and s.status is Status.WORKING:
                s.status = Status.ERROR

        update_with_retry(self.store, domain, _apply, now=now)
        return stale_moved

    def run_once(self, domains: Optional[Iterable[str]] = None, now: Optional[datetime] = None) -> list[dict[str, Any]]:
        results = []
        for domain in domains if domains is not None else self.domains():
            try:
                results.append(self.check_domain(domain, now=now))
            except (LazarusError, OSError, RuntimeError, ValueError) as exc:
                log.error("monitor check for %s failed: %s", domain, exc)
                self.ops.record("monitor_check", "error", domain=domain, now=now, error=str(exc))
                results.append({"domain": domain, "error": str(exc)})
        return results

    def run_forever(self, stop_event: Optional[threading.Event] = None, on_result: Optional[Callable[[list], None]] = None) -> None:
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            results = self.run_once()
            if on_result:
                on_result(results)
            stop_event.wait(timeout=self.config.monitor.interval_sec)


def _stale_on_disk(store: StateStore, domain: str) -> dict[str, bool]:
    """The persisted stale flags, read raw (load() would recompute them)."""
    try:
        raw = json.loads(store.path(domain).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    loops = raw.get("openLoops") if isinstance(raw, dict) else None
    if not isinstance(loops, list):
        return {}
    return {l.get("id"): bool(l.get("stale", False)) for l in loops if isinstance(l, dict)}
