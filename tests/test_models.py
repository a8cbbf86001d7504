"""AgentState model — staleness, retention, resolution, fragment validation."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from lazarus.errors import FragmentInvalid
from lazarus.models import (
    AgentState,
    OpenLoop,
    OpsEvent,
    ResolvedItem,
    Status,
    is_expired,
    is_stale,
    validate_fragment,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


# ── Staleness boundary (14 days, exclusive) ────────────────────────────


def test_loop_fifteen_days_old_is_stale():
    assert is_stale(TODAY - timedelta(days=15), NOW) is True


def test_loop_thirteen_days_old_is_not_stale():
    assert is_stale(TODAY - timedelta(days=13), NOW) is False


def test_loop_exactly_fourteen_days_old_is_not_stale():
    assert is_stale(TODAY - timedelta(days=14), NOW) is False


def test_refresh_staleness_reports_changes():
    state = AgentState(agent_id="ops", open_loops=[
        OpenLoop(id="old", text="x", added=TODAY - timedelta(days=20)),
        OpenLoop(id="new", text="y", added=TODAY),
    ])
    assert state.refresh_staleness(NOW) is True
    assert [l.stale for l in state.open_loops] == [True, False]
    assert state.refresh_staleness(NOW) is False


def test_persisted_stale_flag_is_never_trusted():
    raw = {
        "agentId": "ops",
        "openLoops": [{"id": "a", "text": "t", "added": TODAY.isoformat(), "stale": True}],
    }
    state = AgentState.from_dict(raw, now=NOW)
    assert state.open_loops[0].stale is False


# ── Retention (7 days, inclusive) ──────────────────────────────────────


@pytest.mark.parametrize("age,expired", [(6, False), (7, False), (8, True)])
def test_resolved_retention_window(age: int, expired: bool):
    assert is_expired(TODAY - timedelta(days=age), NOW) is expired


def test_drop_expired_keeps_recent_items():
    state = AgentState(agent_id="ops", resolved=[
        ResolvedItem(id="old", reason="done", resolved_date=TODAY - timedelta(days=8)),
        ResolvedItem(id="recent", reason="done", resolved_date=TODAY - timedelta(days=6)),
    ])
    dropped = state.drop_expired(NOW)
    assert [r.id for r in dropped] == ["old"]
    assert [r.id for r in state.resolved] == ["recent"]


# ── Resolution ─────────────────────────────────────────────────────────


def test_resolve_moves_loop_to_resolved():
    state = AgentState(agent_id="ops", open_loops=[OpenLoop(id="a", text="t", added=TODAY)])
    assert state.resolve("a", "shipped", TODAY) is True
    assert state.open_loops == []
    assert [(r.id, r.reason) for r in state.resolved] == [("a", "shipped")]


def test_resolve_twice_is_idempotent():
    state = AgentState(agent_id="ops", open_loops=[OpenLoop(id="a", text="t", added=TODAY)])
    state.resolve("a", "shipped", TODAY)
    once = state.to_dict()
    assert state.resolve("a", "shipped", TODAY) is False
    assert state.to_dict() == once


def test_resolve_unknown_id_is_noop():
    state = AgentState(agent_id="ops")
    assert state.resolve("ghost", "?", TODAY) is False
    assert state.resolved == []


def test_add_loop_rejects_resolved_id():
    state = AgentState(agent_id="ops", resolved=[ResolvedItem(id="a", reason="r", resolved_date=TODAY)])
    assert state.add_loop(OpenLoop(id="a", text="again", added=TODAY)) is False
    assert state.open_loops == []


def test_touch_never_moves_backwards():
    state = AgentState(agent_id="ops", last_active=NOW)
    state.touch(NOW - timedelta(hours=1))
    assert state.last_active == NOW
    state.touch(NOW + timedelta(minutes=1))
    assert state.last_active == NOW + timedelta(minutes=1)


# ── Serialisation ──────────────────────────────────────────────────────


def test_to_dict_uses_camel_case_keys():
    state = AgentState(agent_id="ops", status=Status.WORKING, current_task="deploy", last_active=NOW)
    data = state.to_dict()
    assert set(data) == {"agentId", "status", "currentTask", "lastActive", "openLoops", "resolved", "numbers"}
    assert data["status"] == "Working"
    assert AgentState.from_dict(data, now=NOW) == state


@pytest.mark.parametrize("raw", [
    [],
    {"status": "Working"},
    {"agentId": "ops", "status": "Sleeping"},
    {"agentId": "ops", "openLoops": [{"id": "a", "text": "t"}]},
    {"agentId": "ops", "openLoops": "nope"},
])
def test_from_dict_rejects_malformed_documents(raw):
    with pytest.raises(ValueError):
        AgentState.from_dict(raw)


def test_status_parse_is_case_insensitive():
    assert Status.parse("working") is Status.WORKING
    with pytest.raises(ValueError):
        Status.parse("done")


# ── Fragment validation ────────────────────────────────────────────────


def test_valid_fragment_returns_parsed_fields():
    fields = validate_fragment("ops", {
        "status": "Working",
        "currentTask": "rotate keys",
        "openLoops": [{"id": "k1", "text": "rotate", "added": "2026-10-10"}],
        "numbers": {"pnl": "12.5"},
    })
    assert fields["status"] is Status.WORKING
    assert fields["current_task"] == "rotate keys"
    assert fields["open_loops"][0].added == date(2026, 10, 10)
    assert fields["numbers"] == {"pnl": "12.5"}


@pytest.mark.parametrize("fragment", [
    "not an object",
    {"mood": "happy"},
    {"agentId": "someone-else"},
    {"status": 3},
    {"numbers": {"a": ["b"]}},
    {"openLoops": [{"id": "a", "text": "t", "added": "yesterday"}]},
    {"openLoops": [
        {"id": "a", "text": "t", "added": "2026-10-01"},
        {"id": "a", "text": "u", "added": "2026-10-02"},
    ]},
])
def test_invalid_fragment_is_rejected_whole(fragment):
    with pytest.raises(FragmentInvalid):
        validate_fragment("ops", fragment)


def test_ops_event_rejects_unknown_status():
    with pytest.raises(ValueError):
        OpsEvent(timestamp=NOW, event_kind="x", status="fine")
