"""Reconciliation Pipeline — merge summariser output and resolutions into live state.

One run per domain:
  1. validate the summary fragment (invalid -> discarded whole, ops error)
  2. merge fragment fields over current state; lastActive is never taken from it
  3. apply pending resolutions (unknown / already-resolved ids are no-ops)
  4. drop resolved items past the retention window
  5. persist in a single atomic_update, then archive the consumed log lines

Steps 2-4 run inside the atomic_update mutator against the document as it is
*at write time*, so heartbeats that land while the summary is being read are
kept.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from lazarus.config import RecoveryConfig
from lazarus.defaults import BRIEF_FILE, SUMMARY_ARCHIVE_DIR, SUMMARY_FILE, domain_dir
from lazarus.errors import FragmentInvalid, LazarusError, StateUpdateFailed
from lazarus.fs import atomic_write_file, compact_timestamp, utc_now
from lazarus.models import AgentState, validate_fragment
from lazarus.opslog import OpsLog
from lazarus.resolutions import ResolutionLog
from lazarus.store import StateStore, update_with_retry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SummaryInput:
    """One externally produced summary: free-text brief plus a partial-state fragment."""

    brief: Optional[str] = None
    fragment: Optional[Any] = None
    source: Optional[Path] = None
    error: Optional[str] = None


SummaryLoader = Callable[[str], Optional[SummaryInput]]


def read_summary_file(path: Path) -> Optional[SummaryInput]:
    """Parse ``summary.json``. Missing -> None; unparseable -> SummaryInput with error."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (ValueError, UnicodeDecodeError) as exc:
        return SummaryInput(source=path, error=f"unparseable summary: {exc}")
    if not isinstance(raw, dict):
        return SummaryInput(source=path, error="summary must be a JSON object")
    brief = raw.get("brief")
    return SummaryInput(
        brief=brief if isinstance(brief, str) else None,
        fragment=raw.get("state"),
        source=path,
    )


def apply_fragment(state: AgentState, fields: dict[str, Any]) -> None:
    """Overwrite state with validated fragment fields, except last_active."""
    for key, value in fields.items():
        if key == "last_active":
            continue
        setattr(state, key, copy.deepcopy(value))


class ReconciliationPipeline:
    def __init__(self, config: RecoveryConfig, summary_loader: Optional[SummaryLoader] = None) -> None:
        self.config = config
        self.ops = OpsLog(config.ops_log_path)
        self.store = StateStore(config.state_dir, ops=self.ops)
        self._summary_loader = summary_loader

    def domains(self) -> list[str]:
        return sorted(set(self.config.domains) | set(self.store.domains()))

    def _domain_dir(self, domain: str) -> Path:
        return domain_dir(self.config.state_dir, domain)

    def load_summary(self, domain: str) -> Optional[SummaryInput]:
        if self._summary_loader is not None:
            return self._summary_loader(domain)
        return read_summary_file(self._domain_dir(domain) / SUMMARY_FILE)

    def _archive_summary(self, summary: SummaryInput, now: Optional[datetime], invalid: bool) -> None:
        if summary.source is None or not summary.source.exists():
            return
        archive_dir = summary.source.parent / SUMMARY_ARCHIVE_DIR
        archive_dir.mkdir(parents=True, exist_ok=True)
        suffix = ".invalid.json" if invalid else ".json"
        os.replace(summary.source, archive_dir / f"{compact_timestamp(now)}{suffix}")

    def reconcile(self, domain: str, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or utc_now()
        prior = self.store.load(domain, now=now)
        prior_last_active = prior.last_active if prior else None
        resolutions = ResolutionLog(self.config.state_dir, domain)
        pending = resolutions.pending()
        summary = self.load_summary(domain)

        # 1. validate
        fields: Optional[dict[str, Any]] = None
        invalid_reason: Optional[str] = None
        if summary is not None:
            if summary.error:
                invalid_reason = summary.error
            elif summary.fragment is not None:
                try:
                    fields = validate_fragment(domain, summary.fragment)
                except FragmentInvalid as exc:
                    invalid_reason = str(exc)
        if invalid_reason:
            log.error("discarding summary fragment for %s: %s", domain, invalid_reason)
            self.ops.record("reconcile_fragment_invalid", "error", domain=domain, now=now, error=invalid_reason)

        if summary is not None and summary.brief is not None:
            atomic_write_file(self._domain_dir(domain) / BRIEF_FILE, summary.brief)

        if invalid_reason:
            # Prior state stays exactly as it was; resolutions wait for the next run.
            if summary is not None:
                self._archive_summary(summary, now, invalid=True)
            return {"domain": domain, "fragment": "discarded", "error": invalid_reason}

        applied: list[str] = []
        expired: list[str] = []

        def _merge(state: AgentState) -> None:
            applied.clear()
            expired.clear()
            # 2. merge, keeping the newest lastActive we have seen
            heartbeat = state.last_active
            if fields:
                apply_fragment(state, fields)
            candidates = [ts for ts in (heartbeat, prior_last_active) if ts is not None]
            state.last_active = max(candidates) if candidates else None
            # 3. resolutions
            for entry in pending:
                if state.resolve(entry.id, entry.reason, entry.timestamp.date()):
                    applied.append(entry.id)
            state.enforce_disjoint()
            # 4. retention
            expired.extend(r.id for r in state.drop_expired(now))

        # 5. persist, then archive
        try:
            update_with_retry(self.store, domain, _merge, now=now)
        except StateUpdateFailed as exc:
            return {"domain": domain, "error": str(exc)}

        archived = resolutions.archive(pending)
        if summary is not None:
            self._archive_summary(summary, now, invalid=False)

        result: dict[str, Any] = {
            "domain": domain,
            "fragment": "merged" if fields else "none",
            "resolutions_applied": applied,
            "resolutions_archived": archived,
            "resolved_expired": expired,
        }
        self.ops.record(
            "reconcile", "ok", domain=domain, now=now,
            **{k: v for k, v in result.items() if k != "domain"},
        )
        return result

    def run_once(self, now: Optional[datetime] = None) -> list[dict[str, Any]]:
        results = []
        for domain in self.domains():
            try:
                results.append(self.reconcile(domain, now=now))
            except (LazarusError, OSError, ValueError) as exc:
                log.error("reconciliation for %s failed: %s", domain, exc)
                self.ops.record("reconcile", "error", domain=domain, now=now, error=str(exc))
                results.append({"domain": domain, "error": str(exc)})
        return results

    def run_forever(self, stop_event: Optional[threading.Event] = None, on_result: Optional[Callable[[list], None]] = None) -> None:
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            results = self.run_once()
            if on_result:
                on_result(results)
            stop_event.wait(timeout=self.config.reconcile.interval_sec)
