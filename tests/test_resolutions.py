"""Resolution Log — append, pending, archive."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from lazarus.resolutions import ResolutionLog

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_append_writes_one_line_per_entry(tmp_path):
    rlog = ResolutionLog(tmp_path, "trades")
    rlog.append("L1", "closed", now=NOW)
    rlog.append("L2", "cancelled", now=NOW + timedelta(seconds=1))
    lines = rlog.path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(l)["id"] for l in lines] == ["L1", "L2"]
    assert json.loads(lines[0]) == {
        "id": "L1",
        "reason": "closed",
        "timestamp": NOW.isoformat(),
        "agentId": "trades",
    }


def test_pending_skips_malformed_and_foreign_entries(tmp_path):
    rlog = ResolutionLog(tmp_path, "trades")
    rlog.append("L1", "closed", now=NOW)
    with open(rlog.path, "a", encoding="utf-8") as f:
        f.write("{garbage\n")
        f.write(json.dumps({"id": "X", "reason": "r", "timestamp": NOW.isoformat(), "agentId": "ops"}) + "\n")
        f.write(json.dumps({"reason": "no id"}) + "\n")
    assert [e.id for e in rlog.pending()] == ["L1"]


def test_pending_on_missing_log_is_empty(tmp_path):
    assert ResolutionLog(tmp_path, "trades").pending() == []


def test_archive_moves_consumed_and_keeps_later_appends(tmp_path):
    rlog = ResolutionLog(tmp_path, "trades")
    rlog.append("L1", "closed", now=NOW)
    consumed = rlog.pending()
    # Appended after the reader took its snapshot
    rlog.append("L2", "late", now=NOW + timedelta(minutes=1))

    assert rlog.archive(consumed) == 1
    assert [e.id for e in rlog.pending()] == ["L2"]
    assert [r["id"] for r in rlog.archived()] == ["L1"]


def test_archive_twice_is_harmless(tmp_path):
    rlog = ResolutionLog(tmp_path, "trades")
    rlog.append("L1", "closed", now=NOW)
    consumed = rlog.pending()
    rlog.archive(consumed)
    assert rlog.archive(consumed) == 0
    assert len(rlog.archived()) == 1


def test_archive_with_nothing_consumed(tmp_path):
    rlog = ResolutionLog(tmp_path, "trades")
    rlog.append("L1", "closed", now=NOW)
    assert rlog.archive([]) == 0
    assert [e.id for e in rlog.pending()] == ["L1"]
