"""Filesystem helpers — atomic writes, jsonl append, presence markers.

Every durable write in lazarus goes through one of these:
  atomic_write_file  — full document, temp file + rename
  append_jsonl       — one record per line, append-only
  touch_marker       — zero-length presence sentinel
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

log = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def compact_timestamp(now: datetime | None = None) -> str:
    """Compact timestamp for filenames: 20260219T143022."""
    return (now or utc_now()).strftime("%Y%m%dT%H%M%S")


# ---------------------------------------------------------------------------
# Atomic file write
# ---------------------------------------------------------------------------

def atomic_write_file(path: str | Path, content: str) -> Path:
    """Write content to path atomically (write-to-temp, fsync, then rename).

    The temp file lives in the same directory so the rename never crosses a
    volume. Readers see the old file or the new one, never a partial write.
    Returns the final path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
    return path


def atomic_write_json(path: str | Path, payload: Any) -> Path:
    return atomic_write_file(path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")


def read_text_file(path: str | Path | None) -> str:
    """Read a text file, returning empty string if missing or None."""
    if not path:
        return ""
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""


# ---------------------------------------------------------------------------
# Line-delimited JSON
# ---------------------------------------------------------------------------

def append_jsonl(path: str | Path, record: dict[str, Any]) -> None:
    """Append one JSON record as a single line. Never rewrites existing lines."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n"
    with open(path, "a", encoding="utf-8") as f:
        f.write(line)
        f.flush()
        os.fsync(f.fileno())


def iter_jsonl(path: str | Path) -> Iterator[dict[str, Any]]:
    """Yield parsed records; blank and unparseable lines are skipped with a warning."""
    path = Path(path)
    if not path.exists():
        return
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                log.warning("skipping corrupt line %d in %s", lineno, path)
                continue
            if isinstance(record, dict):
                yield record


# ---------------------------------------------------------------------------
# Presence markers
# ---------------------------------------------------------------------------

def touch_marker(path: str | Path) -> None:
    """Create a presence sentinel. Content is irrelevant; existence is the signal."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)


def marker_present(path: str | Path) -> bool:
    return Path(path).exists()


def consume_marker(path: str | Path) -> bool:
    """Delete a marker. Returns True if this call removed it."""
    try:
        os.unlink(path)
    except FileNotFoundError:
        return False
    return True
