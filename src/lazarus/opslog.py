"""Ops log — append-only jsonl of OpsEvents for external observability."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from lazarus.fs import append_jsonl, iter_jsonl, utc_now
from lazarus.models import OpsEvent

log = logging.getLogger(__name__)


class OpsLog:
    """Writer for ``ops.jsonl``. Nothing in lazarus reads it back except tests and `status`."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def record(
        self,
        event_kind: str,
        status: str = "ok",
        domain: Optional[str] = None,
        now: Optional[datetime] = None,
        **detail: Any,
    ) -> OpsEvent:
        event = OpsEvent(
            timestamp=now or utc_now(),
            event_kind=event_kind,
            status=status,
            domain=domain,
            detail=detail,
        )
        try:
            append_jsonl(self.path, event.to_dict())
        except OSError as exc:
            # The ops log is observability only; losing a line must not stop recovery.
            log.warning("could not append %s event to %s: %s", event_kind, self.path, exc)
        return event

    def tail(self, limit: int = 20, domain: Optional[str] = None) -> list[dict[str, Any]]:
        records = [r for r in iter_jsonl(self.path) if domain is None or r.get("domain") == domain]
        return records[-limit:] if limit else records
