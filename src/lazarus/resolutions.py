"""Resolution Log — append-only record of open-loop completions.

Writers append one line per resolution. Only reconciliation consumes the
log: after its state merge is persisted it moves the consumed lines to the
archive file. Both appends and the archive move hold the log lock, so a
move never races an append.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from filelock import FileLock

from lazarus.defaults import RESOLUTION_ARCHIVE_FILE, RESOLUTION_LOG_FILE, domain_dir
from lazarus.fs import append_jsonl, atomic_write_file, iter_jsonl, utc_now
from lazarus.models import ResolutionLogEntry

log = logging.getLogger(__name__)


def _key(record: object) -> tuple[str, str] | None:
    if not isinstance(record, dict):
        return None
    try:
        entry = ResolutionLogEntry.from_dict(record)
    except ValueError:
        return None
    return entry.id, entry.timestamp.isoformat()


class ResolutionLog:
    def __init__(self, state_dir: str | Path, domain: str, lock_timeout: float = 5.0) -> None:
        self.domain = domain
        base = domain_dir(Path(state_dir), domain)
        self.path = base / RESOLUTION_LOG_FILE
        self.archive_path = base / RESOLUTION_ARCHIVE_FILE
        self.lock_timeout = lock_timeout

    def _lock(self) -> FileLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.path) + ".lock", timeout=self.lock_timeout)

    def append(self, loop_id: str, reason: str, now: Optional[datetime] = None) -> ResolutionLogEntry:
        entry = ResolutionLogEntry(id=loop_id, reason=reason, timestamp=now or utc_now(), agent_id=self.domain)
        with self._lock():
            append_jsonl(self.path, entry.to_dict())
        return entry

    def pending(self) -> list[ResolutionLogEntry]:
        """Unprocessed entries for this domain, in append order."""
        entries: list[ResolutionLogEntry] = []
        for record in iter_jsonl(self.path):
            try:
                entry = ResolutionLogEntry.from_dict(record)
            except ValueError as exc:
                log.warning("skipping malformed resolution entry in %s: %s", self.path, exc)
                continue
            if entry.agent_id != self.domain:
                log.warning("skipping resolution %s for foreign agent %s", entry.id, entry.agent_id)
                continue
            entries.append(entry)
        return entries

    def archive(self, consumed: Iterable[ResolutionLogEntry]) -> int:
        """Move consumed entries to the archive. Lines appended since are kept.

        Archive first, then rewrite the live log atomically: a crash in between
        leaves entries in both files, and replaying a resolution is a no-op.
        """
        keys = {(e.id, e.timestamp.isoformat()) for e in consumed}
        if not keys:
            return 0
        moved = 0
        with self._lock():
            kept: list[str] = []
            if not self.path.exists():
                return 0
            for line in self.path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    kept.append(line)
                    continue
                if _key(record) in keys:
                    append_jsonl(self.archive_path, record)
                    moved += 1
                else:
                    kept.append(line)
            atomic_write_file(self.path, "".join(line + "\n" for line in kept))
        return moved

    def archived(self) -> list[dict]:
        return list(iter_jsonl(self.archive_path))
