"""Reconciliation Pipeline — fragment merge, resolutions, retention, archiving."""

from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone

import pytest

from lazarus.config import RecoveryConfig
from lazarus.hooks import RecoveryCoordinator
from lazarus.models import OpenLoop, ResolvedItem, Status
from lazarus.reconcile import ReconciliationPipeline, SummaryInput, read_summary_file
from lazarus.resolutions import ResolutionLog

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


@pytest.fixture
def config(tmp_path) -> RecoveryConfig:
    return RecoveryConfig(config_path=None, state_dir=tmp_path / ".lazarus")


@pytest.fixture
def pipeline(config) -> ReconciliationPipeline:
    return ReconciliationPipeline(config)


def _seed(pipeline, **fields):
    def _apply(state):
        for key, value in fields.items():
            setattr(state, key, value)
    pipeline.store.atomic_update("trades", _apply, now=NOW)


def _write_summary(config, payload, domain="trades"):
    path = config.state_dir / domain / "summary.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload), encoding="utf-8")
    return path


def _events(config) -> list[dict]:
    return [json.loads(l) for l in config.ops_log_path.read_text(encoding="utf-8").splitlines()]


def test_fragment_fields_are_merged(config, pipeline):
    _seed(pipeline, status=Status.WORKING, current_task="old", last_active=NOW - timedelta(hours=1))
    _write_summary(config, {
        "brief": "Closed the EUR book.",
        "state": {
            "status": "Idle",
            "currentTask": "",
            "openLoops": [{"id": "n1", "text": "follow up", "added": "2026-10-18"}],
            "numbers": {"positions": 4},
        },
    })
    result = pipeline.reconcile("trades", now=NOW)
    assert result["fragment"] == "merged"
    state = pipeline.store.load("trades")
    assert state.status is Status.IDLE
    assert [l.id for l in state.open_loops] == ["n1"]
    assert state.numbers == {"positions": "4"}
    assert (config.state_dir / "trades" / "brief.md").read_text(encoding="utf-8") == "Closed the EUR book."


def test_fragment_last_active_is_ignored(config, pipeline):
    _seed(pipeline, last_active=NOW - timedelta(hours=1))
    _write_summary(config, {"state": {"lastActive": "2020-01-01T00:00:00+00:00"}})
    pipeline.reconcile("trades", now=NOW)
    assert pipeline.store.load("trades").last_active == NOW - timedelta(hours=1)


def test_heartbeat_during_reconciliation_is_kept(config):
    beat_at = NOW + timedelta(minutes=5)
    coord = RecoveryCoordinator(config)

    def _slow_summariser(domain):
        # A heartbeat lands while the summary is being produced
        assert coord.on_activity(domain, timeout=2.0, now=beat_at)
        return SummaryInput(brief="b", fragment={"currentTask": "from summary"})

    pipeline = ReconciliationPipeline(config, summary_loader=_slow_summariser)
    _seed(pipeline, last_active=NOW)
    pipeline.reconcile("trades", now=NOW)
    state = pipeline.store.load("trades")
    assert state.last_active == beat_at
    assert state.current_task == "from summary"


def test_invalid_fragment_leaves_state_untouched(config, pipeline):
    _seed(pipeline, status=Status.WORKING, open_loops=[OpenLoop(id="L1", text="t", added=TODAY)])
    ResolutionLog(config.state_dir, "trades").append("L1", "done", now=NOW)
    before = pipeline.store.path("trades").read_text(encoding="utf-8")
    _write_summary(config, {"brief": "still useful", "state": {"status": "Working", "mood": "great"}})

    result = pipeline.reconcile("trades", now=NOW)

    assert result["fragment"] == "discarded"
    assert pipeline.store.path("trades").read_text(encoding="utf-8") == before
    assert [e.id for e in ResolutionLog(config.state_dir, "trades").pending()] == ["L1"]
    assert ("reconcile_fragment_invalid", "error") in [(e["eventKind"], e["status"]) for e in _events(config)]
    assert (config.state_dir / "trades" / "brief.md").read_text(encoding="utf-8") == "still useful"
    assert len(list((config.state_dir / "trades" / "summaries").glob("*.invalid.json"))) == 1


def test_unparseable_summary_is_discarded(config, pipeline):
    _seed(pipeline)
    _write_summary(config, "{nope")
    assert pipeline.reconcile("trades", now=NOW)["fragment"] == "discarded"


def test_resolutions_applied_and_archived(config, pipeline):
    _seed(pipeline, open_loops=[
        OpenLoop(id="L1", text="one", added=TODAY),
        OpenLoop(id="L2", text="two", added=TODAY),
    ])
    rlog = ResolutionLog(config.state_dir, "trades")
    rlog.append("L1", "filled", now=NOW - timedelta(hours=3))
    rlog.append("ghost", "never existed", now=NOW - timedelta(hours=2))

    result = pipeline.reconcile("trades", now=NOW)

    assert result["resolutions_applied"] == ["L1"]
    assert result["resolutions_archived"] == 2
    state = pipeline.store.load("trades")
    assert [l.id for l in state.open_loops] == ["L2"]
    assert [(r.id, r.reason, r.resolved_date) for r in state.resolved] == [("L1", "filled", TODAY)]
    assert rlog.pending() == []


def test_duplicate_resolution_is_idempotent(config, pipeline):
    _seed(pipeline, open_loops=[OpenLoop(id="L1", text="one", added=TODAY)])
    rlog = ResolutionLog(config.state_dir, "trades")
    rlog.append("L1", "filled", now=NOW - timedelta(hours=3))
    rlog.append("L1", "filled again", now=NOW - timedelta(hours=2))
    pipeline.reconcile("trades", now=NOW)
    once = pipeline.store.path("trades").read_text(encoding="utf-8")

    rlog.append("L1", "and again", now=NOW - timedelta(hours=1))
    pipeline.reconcile("trades", now=NOW)

    state = pipeline.store.load("trades")
    assert [r.id for r in state.resolved] == ["L1"]
    assert pipeline.store.path("trades").read_text(encoding="utf-8") == once


def test_fragment_cannot_reopen_resolved_loop(config, pipeline):
    _seed(pipeline, resolved=[ResolvedItem(id="L1", reason="done", resolved_date=TODAY)])
    _write_summary(config, {"state": {"openLoops": [{"id": "L1", "text": "t", "added": "2026-10-10"}]}})
    pipeline.reconcile("trades", now=NOW)
    state = pipeline.store.load("trades")
    assert state.open_loops == []
    assert [r.id for r in state.resolved] == ["L1"]


def test_retention_drops_items_past_seven_days(config, pipeline):
    _seed(pipeline, resolved=[
        ResolvedItem(id="old", reason="r", resolved_date=TODAY - timedelta(days=8)),
        ResolvedItem(id="edge", reason="r", resolved_date=TODAY - timedelta(days=7)),
        ResolvedItem(id="recent", reason="r", resolved_date=TODAY - timedelta(days=6)),
    ])
    result = pipeline.reconcile("trades", now=NOW)
    assert result["resolved_expired"] == ["old"]
    assert [r.id for r in pipeline.store.load("trades").resolved] == ["edge", "recent"]


def test_summary_is_archived_after_merge(config, pipeline):
    _seed(pipeline)
    source = _write_summary(config, {"brief": "x", "state": {}})
    pipeline.reconcile("trades", now=NOW)
    assert not source.exists()
    archived = list((config.state_dir / "trades" / "summaries").iterdir())
    assert [p.name for p in archived] == ["20261019T120000.json"]


def test_reconcile_without_summary_still_applies_resolutions(config, pipeline):
    _seed(pipeline, open_loops=[OpenLoop(id="L1", text="one", added=TODAY)])
    ResolutionLog(config.state_dir, "trades").append("L1", "done", now=NOW)
    result = pipeline.reconcile("trades", now=NOW)
    assert result["fragment"] == "none"
    assert pipeline.store.load("trades").open_loops == []
    assert _events(config)[-1]["eventKind"] == "reconcile"


def test_read_summary_file_rejects_non_object(tmp_path):
    path = tmp_path / "summary.json"
    path.write_text("[1, 2]", encoding="utf-8")
    assert read_summary_file(path).error
    assert read_summary_file(tmp_path / "missing.json") is None


def test_run_once_continues_after_a_foreign_state_document(config, pipeline):
    pipeline.store.atomic_update("bravo", lambda s: None, now=NOW)
    pipeline.store.atomic_update("zulu", lambda s: None, now=NOW)
    foreign = config.state_dir / "alpha" / "state.json"
    foreign.parent.mkdir(parents=True)
    foreign.write_text(pipeline.store.path("bravo").read_text(encoding="utf-8"), encoding="utf-8")
    ResolutionLog(config.state_dir, "zulu").append("z1", "done", now=NOW)

    results = {r["domain"]: r for r in pipeline.run_once(now=NOW)}
    assert "error" in results["alpha"]
    assert results["zulu"]["resolutions_archived"] == 1
    assert any(e["eventKind"] == "reconcile" and e["status"] == "error" and e["domain"] == "alpha"
               for e in _events(config))
