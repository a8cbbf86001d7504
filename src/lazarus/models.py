"""State document model — AgentState, open loops, resolutions, ops events.

On disk everything is camelCase JSON. Parsing is strict: a document that
does not match the shape raises ValueError and is treated as corrupt by the
store. ``stale`` is derived from ``added`` and never read back from disk.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from lazarus.errors import FragmentInvalid

STALE_AFTER_DAYS = 14
RESOLVED_RETENTION_DAYS = 7


class Status(str, Enum):
    IDLE = "Idle"
    WORKING = "Working"
    ERROR = "Error"

    @classmethod
    def parse(cls, value: Any) -> Status:
        if isinstance(value, Status):
            return value
        text = str(value).strip()
        for member in cls:
            if member.value.lower() == text.lower():
                return member
        raise ValueError(f"unknown status {value!r}; expected one of Idle, Working, Error")


OPS_STATUSES = ("ok", "warn", "error")


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------

def _today(now: datetime | None) -> date:
    return (now or datetime.now(timezone.utc)).date()


def parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError(f"expected ISO date string, got {type(value).__name__}")
    # Accept full timestamps too; summarisers are not consistent about it.
    return datetime.fromisoformat(value).date() if "T" in value else date.fromisoformat(value)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        ts = datetime.fromisoformat(value)
    else:
        raise ValueError(f"expected ISO timestamp string, got {type(value).__name__}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def is_stale(added: date, now: datetime | None = None) -> bool:
    """True iff the loop is strictly older than STALE_AFTER_DAYS whole days.

    Exactly 14 days old is not stale; 15 is.
    """
    return (_today(now) - added).days > STALE_AFTER_DAYS


def is_expired(resolved_date: date, now: datetime | None = None) -> bool:
    """True iff a resolved item is past the retention window (8+ days old)."""
    return (_today(now) - resolved_date).days > RESOLVED_RETENTION_DAYS


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class OpenLoop:
    id: str
    text: str
    added: date
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "text": self.text, "added": self.added.isoformat(), "stale": self.stale}

    @classmethod
    def from_dict(cls, data: Any) -> OpenLoop:
        if not isinstance(data, dict):
            raise ValueError("open loop must be an object")
        loop_id = data.get("id")
        if not isinstance(loop_id, str) or not loop_id:
            raise ValueError("open loop id must be a non-empty string")
        text = data.get("text", "")
        if not isinstance(text, str):
            raise ValueError(f"open loop {loop_id}: text must be a string")
        if "added" not in data:
            raise ValueError(f"open loop {loop_id}: missing 'added'")
        return cls(id=loop_id, text=text, added=parse_date(data["added"]))


@dataclass
class ResolvedItem:
    id: str
    reason: str
    resolved_date: date

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "reason": self.reason, "resolvedDate": self.resolved_date.isoformat()}

    @classmethod
    def from_dict(cls, data: Any) -> ResolvedItem:
        if not isinstance(data, dict):
            raise ValueError("resolved item must be an object")
        item_id = data.get("id")
        if not isinstance(item_id, str) or not item_id:
            raise ValueError("resolved item id must be a non-empty string")
        reason = data.get("reason", "")
        if not isinstance(reason, str):
            raise ValueError(f"resolved item {item_id}: reason must be a string")
        if "resolvedDate" not in data:
            raise ValueError(f"resolved item {item_id}: missing 'resolvedDate'")
        return cls(id=item_id, reason=reason, resolved_date=parse_date(data["resolvedDate"]))


@dataclass
class AgentState:
    agent_id: str
    status: Status = Status.IDLE
    current_task: str = ""
    last_active: Optional[datetime] = None
    open_loops: list[OpenLoop] = field(default_factory=list)
    resolved: list[ResolvedItem] = field(default_factory=list)
    numbers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def default(cls, agent_id: str) -> AgentState:
        return cls(agent_id=agent_id)

    # -- derived ------------------------------------------------------------

    def refresh_staleness(self, now: datetime | None = None) -> bool:
        """Recompute every loop's stale flag. Returns True if any flag changed."""
        changed = False
        for loop in self.open_loops:
            stale = is_stale(loop.added, now)
            if stale != loop.stale:
                loop.stale = stale
                changed = True
        return changed

    def fresh_loops(self) -> list[OpenLoop]:
        return [loop for loop in self.open_loops if not loop.stale]

    def touch(self, now: datetime | None = None) -> None:
        """Heartbeat: advance lastActive, never move it backwards."""
        ts = now or datetime.now(timezone.utc)
        if self.last_active is None or ts > self.last_active:
            self.last_active = ts

    # -- work items ---------------------------------------------------------

    def add_loop(self, loop: OpenLoop) -> bool:
        """Append a loop unless its id is already open or resolved."""
        if any(l.id == loop.id for l in self.open_loops):
            return False
        if any(r.id == loop.id for r in self.resolved):
            return False
        self.open_loops.append(loop)
        return True

    def resolve(self, loop_id: str, reason: str, resolved_date: date) -> bool:
        """Move a loop from openLoops to resolved. No-op if the loop is not open."""
        for index, loop in enumerate(self.open_loops):
            if loop.id == loop_id:
                del self.open_loops[index]
                break
        else:
            return False
        if not any(r.id == loop_id for r in self.resolved):
            self.resolved.append(ResolvedItem(id=loop_id, reason=reason, resolved_date=resolved_date))
        return True

    def drop_expired(self, now: datetime | None = None) -> list[ResolvedItem]:
        expired = [r for r in self.resolved if is_expired(r.resolved_date, now)]
        if expired:
            self.resolved = [r for r in self.resolved if not is_expired(r.resolved_date, now)]
        return expired

    def enforce_disjoint(self) -> None:
        """Drop open loops whose id already appears in resolved."""
        resolved_ids = {r.id for r in self.resolved}
        self.open_loops = [l for l in self.open_loops if l.id not in resolved_ids]

    # -- serialisation ------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "status": self.status.value,
            "currentTask": self.current_task,
            "lastActive": self.last_active.isoformat() if self.last_active else None,
            "openLoops": [l.to_dict() for l in self.open_loops],
            "resolved": [r.to_dict() for r in self.resolved],
            "numbers": dict(self.numbers),
        }

    @classmethod
    def from_dict(cls, data: Any, now: datetime | None = None) -> AgentState:
        if not isinstance(data, dict):
            raise ValueError("state document must be a JSON object")
        agent_id = data.get("agentId")
        if not isinstance(agent_id, str) or not agent_id:
            raise ValueError("agentId must be a non-empty string")
        fields = _parse_fields(data)
        state = cls(agent_id=agent_id, **fields)
        state.refresh_staleness(now)
        return state


# ---------------------------------------------------------------------------
# Fragment validation
# ---------------------------------------------------------------------------

FRAGMENT_KEYS = frozenset(
    {"agentId", "status", "currentTask", "lastActive", "openLoops", "resolved", "numbers"}
)


def _unique(items: list[Any], what: str) -> None:
    seen: set[str] = set()
    for item in items:
        if item.id in seen:
            raise ValueError(f"duplicate {what} id {item.id!r}")
        seen.add(item.id)


def _parse_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Parse the optional AgentState fields present in data (snake_case keys out)."""
    out: dict[str, Any] = {}
    if "status" in data:
        out["status"] = Status.parse(data["status"])
    if "currentTask" in data:
        task = data["currentTask"]
        if task is None:
            task = ""
        if not isinstance(task, str):
            raise ValueError("currentTask must be a string")
        out["current_task"] = task
    if data.get("lastActive") is not None:
        out["last_active"] = parse_timestamp(data["lastActive"])
    if "openLoops" in data:
        raw_loops = data["openLoops"]
        if not isinstance(raw_loops, list):
            raise ValueError("openLoops must be a list")
        loops = [OpenLoop.from_dict(item) for item in raw_loops]
        _unique(loops, "open loop")
        out["open_loops"] = loops
    if "resolved" in data:
        raw_resolved = data["resolved"]
        if not isinstance(raw_resolved, list):
            raise ValueError("resolved must be a list")
        resolved = [ResolvedItem.from_dict(item) for item in raw_resolved]
        _unique(resolved, "resolved item")
        out["resolved"] = resolved
    if "numbers" in data:
        numbers = data["numbers"]
        if not isinstance(numbers, dict):
            raise ValueError("numbers must be an object")
        for key, value in numbers.items():
            if not isinstance(key, str) or not isinstance(value, (str, int, float)) or isinstance(value, bool):
                raise ValueError(f"numbers[{key!r}] must map a string to a string")
        out["numbers"] = {k: str(v) for k, v in numbers.items()}
    return out


def validate_fragment(domain: str, fragment: Any) -> dict[str, Any]:
    """Validate a summariser fragment; return its parsed fields (snake_case).

    Any unknown key, type mismatch, or foreign agentId rejects the whole
    fragment; nothing is partially accepted.
    """
    if not isinstance(fragment, dict):
        raise FragmentInvalid("fragment must be a JSON object")
    unknown = set(fragment) - FRAGMENT_KEYS
    if unknown:
        raise FragmentInvalid(f"unknown fragment keys: {', '.join(sorted(unknown))}")
    agent_id = fragment.get("agentId")
    if agent_id is not None and agent_id != domain:
        raise FragmentInvalid(f"fragment agentId {agent_id!r} does not match domain {domain!r}")
    try:
        return _parse_fields(fragment)
    except ValueError as exc:
        raise FragmentInvalid(str(exc)) from exc


# ---------------------------------------------------------------------------
# Log records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResolutionLogEntry:
    id: str
    reason: str
    timestamp: datetime
    agent_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "agentId": self.agent_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolutionLogEntry:
        entry_id = data.get("id")
        agent_id = data.get("agentId")
        if not isinstance(entry_id, str) or not entry_id:
            raise ValueError("resolution entry id must be a non-empty string")
        if not isinstance(agent_id, str) or not agent_id:
            raise ValueError("resolution entry agentId must be a non-empty string")
        return cls(
            id=entry_id,
            reason=str(data.get("reason", "")),
            timestamp=parse_timestamp(data.get("timestamp")),
            agent_id=agent_id,
        )


@dataclass(frozen=True)
class OpsEvent:
    timestamp: datetime
    event_kind: str
    status: str
    domain: Optional[str] = None
    detail: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status not in OPS_STATUSES:
            raise ValueError(f"ops status must be one of {OPS_STATUSES}, got {self.status!r}")

    def to_dict(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "eventKind": self.event_kind,
            "status": self.status,
        }
        if self.domain:
            record["domain"] = self.domain
        if self.detail:
            record["detail"] = self.detail
        return record
