"""Liveness Monitor — decision table, restart arbitration, staleness refresh."""

from __future__ import annotations

import json
import os
from datetime import date, datetime, timedelta, timezone

import pytest

from lazarus.config import RecoveryConfig
from lazarus.models import OpenLoop, Status
from lazarus.monitor import HEALTHY, INTENTIONAL_STOP, RESTART, LivenessMonitor, decide
from lazarus.supervisor import DomainMarkers, Phase, SupervisorControl

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeLiveness:
    def __init__(self, alive: bool = False) -> None:
        self.alive = alive
        self.calls: list[str] = []

    def __call__(self, domain: str) -> bool:
        self.calls.append(domain)
        return self.alive


@pytest.fixture
def config(tmp_path) -> RecoveryConfig:
    return RecoveryConfig(config_path=None, state_dir=tmp_path / ".lazarus")


@pytest.fixture
def spawned() -> list[str]:
    return []


def _monitor(config, spawned, alive=False) -> LivenessMonitor:
    return LivenessMonitor(config, liveness=FakeLiveness(alive), spawner=spawned.append)


def _seed(monitor, status=Status.WORKING, loops=(), now=NOW):
    def _apply(state):
        state.status = status
        state.open_loops = list(loops)
    monitor.store.atomic_update("trades", _apply, now=now)


@pytest.mark.parametrize("alive,marker,expected", [
    (True, False, HEALTHY),
    (True, True, HEALTHY),
    (False, True, INTENTIONAL_STOP),
    (False, False, RESTART),
])
def test_decision_table(alive, marker, expected):
    assert decide(alive, marker) == expected


def test_healthy_agent_is_left_alone(config, spawned):
    monitor = _monitor(config, spawned, alive=True)
    _seed(monitor)
    result = monitor.check_domain("trades", now=NOW)
    assert result["decision"] == HEALTHY
    assert spawned == []
    assert monitor.store.load("trades").status is Status.WORKING


def test_intentional_stop_consumes_marker(config, spawned):
    monitor = _monitor(config, spawned)
    markers = DomainMarkers(config.state_dir, "trades")
    markers.mark_clean_exit()
    result = monitor.check_domain("trades", now=NOW)
    assert result["decision"] == INTENTIONAL_STOP
    assert not markers.clean_exit_present()
    assert spawned == []
    # Next check without the marker restarts
    assert monitor.check_domain("trades", now=NOW)["decision"] == RESTART


def test_dead_without_marker_requests_exactly_one_restart(config, spawned):
    monitor = _monitor(config, spawned)
    first = monitor.check_domain("trades", now=NOW)
    second = monitor.check_domain("trades", now=NOW + timedelta(seconds=30))
    assert first["restart"] == "spawned"
    assert second["restart"] == "noop:start_pending"
    assert spawned == ["trades"]
    assert SupervisorControl(config.state_dir, "trades").status().phase is Phase.STARTING


def test_safe_mode_is_not_restarted(config, spawned):
    monitor = _monitor(config, spawned)
    SupervisorControl(config.state_dir, "trades").update(phase=Phase.SAFE_MODE, crash_count=5)
    assert monitor.check_domain("trades", now=NOW)["restart"] == "noop:safe_mode"
    assert spawned == []


def test_crash_marks_working_state_as_error(config, spawned):
    monitor = _monitor(config, spawned)
    _seed(monitor, status=Status.WORKING)
    monitor.check_domain("trades", now=NOW)
    assert monitor.store.load("trades").status is Status.ERROR


def test_crash_leaves_idle_state_idle(config, spawned):
    monitor = _monitor(config, spawned)
    _seed(monitor, status=Status.IDLE)
    monitor.check_domain("trades", now=NOW)
    assert monitor.store.load("trades").status is Status.IDLE


def test_staleness_is_persisted_once(config, spawned):
    monitor = _monitor(config, spawned, alive=True)
    added = (NOW - timedelta(days=20)).date()
    # Written ten days ago, when the loop was still fresh
    _seed(monitor, loops=[OpenLoop(id="a", text="t", added=added)], now=NOW - timedelta(days=10))
    raw = json.loads(monitor.store.path("trades").read_text(encoding="utf-8"))
    assert raw["openLoops"][0]["stale"] is False

    assert monitor.check_domain("trades", now=NOW)["stale_changed"] is True
    raw = json.loads(monitor.store.path("trades").read_text(encoding="utf-8"))
    assert raw["openLoops"][0]["stale"] is True
    assert monitor.check_domain("trades", now=NOW)["stale_changed"] is False


def test_run_once_covers_configured_and_stored_domains(config, spawned):
    monitor = _monitor(config, spawned, alive=True)
    _seed(monitor)
    monitor.store.atomic_update("ops", lambda s: None)
    assert [r["domain"] for r in monitor.run_once(now=NOW)] == ["ops", "trades"]
    assert monitor._liveness.calls == ["ops", "trades"]


def test_run_once_reports_per_domain_failures(config):
    def _broken_spawner(domain):
        raise RuntimeError("supervisor died immediately")

    monitor = LivenessMonitor(config, liveness=FakeLiveness(False), spawner=_broken_spawner)
    results = monitor.run_once(["trades"], now=NOW)
    assert results == [{"domain": "trades", "error": "supervisor died immediately"}]
    events = [json.loads(l) for l in config.ops_log_path.read_text(encoding="utf-8").splitlines()]
    assert events[-1]["status"] == "error"


def test_default_oracle_reads_child_pid(config, spawned):
    monitor = LivenessMonitor(config, spawner=spawned.append)
    SupervisorControl(config.state_dir, "trades").update(phase=Phase.RUNNING, child_pid=os.getpid())
    assert monitor.check_domain("trades", now=NOW)["alive"] is True
    SupervisorControl(config.state_dir, "trades").update(child_pid=None)
    assert monitor.check_domain("trades", now=NOW)["alive"] is False


def test_supervisor_dying_with_its_agent_ends_in_safe_mode(config):
    control = SupervisorControl(config.state_dir, "trades")
    spawned: list[str] = []

    def _spawner(domain):
        # The new supervisor reaches Running, then dies along with its agent.
        spawned.append(domain)
        control.update(phase=Phase.RUNNING, pid=None, child_pid=None)

    monitor = LivenessMonitor(config, liveness=FakeLiveness(False), spawner=_spawner)
    control.update(phase=Phase.RUNNING)
    restarts = [monitor.check_domain("trades", now=NOW + timedelta(hours=i))["restart"] for i in range(10)]

    assert restarts == ["spawned"] * 4 + ["safe_mode"] + ["noop:safe_mode"] * 5
    assert spawned == ["trades"] * 4
    status = control.status()
    assert (status.phase, status.crash_count) == (Phase.SAFE_MODE, 5)
    events = [json.loads(l) for l in config.ops_log_path.read_text(encoding="utf-8").splitlines()]
    checks = [e for e in events if e["eventKind"] == "monitor_check"]
    assert checks[4]["status"] == "error"


def test_run_once_skips_past_an_invalid_domain_directory(config, spawned):
    monitor = _monitor(config, spawned, alive=True)
    _seed(monitor)
    bad = config.state_dir / "bad name"
    bad.mkdir(parents=True)
    (bad / "state.json").write_text("{}", encoding="utf-8")

    results = monitor.run_once(now=NOW)
    assert [r["domain"] for r in results] == ["bad name", "trades"]
    assert "error" in results[0]
    assert results[1]["decision"] == HEALTHY
