"""State Document Store — atomic read/mutate/write of one AgentState per domain.

``atomic_update`` is the only write path for ``state.json``. It holds the
domain's advisory lock for exactly one read-modify-write and publishes the
result with a same-directory rename, so readers never need the lock.
"""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from filelock import FileLock, Timeout

from lazarus.defaults import STATE_FILE, domain_dir
from lazarus.errors import StateUpdateFailed
from lazarus.fs import atomic_write_json, compact_timestamp
from lazarus.models import AgentState
from lazarus.opslog import OpsLog

log = logging.getLogger(__name__)

Mutator = Callable[[AgentState], Optional[AgentState]]

DEFAULT_LOCK_TIMEOUT = 5.0


class StateStore:
    def __init__(
        self,
        state_dir: str | Path,
        ops: Optional[OpsLog] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        self.state_dir = Path(state_dir)
        self.ops = ops
        self.lock_timeout = lock_timeout

    # -- paths --------------------------------------------------------------

    def path(self, domain: str) -> Path:
        return domain_dir(self.state_dir, domain) / STATE_FILE

    def lock(self, domain: str, timeout: Optional[float] = None) -> FileLock:
        """Per-domain advisory lock. A fresh instance per call so threads contend too."""
        lock_path = self.path(domain).with_name(STATE_FILE + ".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(lock_path), timeout=self.lock_timeout if timeout is None else timeout)

    def domains(self) -> list[str]:
        if not self.state_dir.is_dir():
            return []
        return sorted(
            p.name for p in self.state_dir.iterdir()
            if p.is_dir() and not p.name.startswith(".") and (p / STATE_FILE).exists()
        )

    # -- read ---------------------------------------------------------------

    def _parse(self, path: Path, now: Optional[datetime]) -> AgentState:
        return AgentState.from_dict(json.loads(path.read_text(encoding="utf-8")), now=now)

    def _report_corrupt(self, domain: str, path: Path, exc: Exception, **detail: object) -> None:
        log.error("state document for %s is malformed: %s", domain, exc)
        if self.ops is not None:
            self.ops.record("state_corrupt", "error", domain=domain, path=str(path), error=str(exc), **detail)

    def load(self, domain: str, now: Optional[datetime] = None) -> Optional[AgentState]:
        """Return the current AgentState, or None if absent or malformed."""
        path = self.path(domain)
        try:
            state = self._parse(path, now)
            if state.agent_id != domain:
                raise ValueError(f"document belongs to '{state.agent_id}', not '{domain}'")
        except FileNotFoundError:
            return None
        except (ValueError, UnicodeDecodeError) as exc:
            # json.JSONDecodeError is a ValueError
            self._report_corrupt(domain, path, exc)
            return None
        return state

    # -- write --------------------------------------------------------------

    def _read_for_update(self, domain: str, path: Path, now: Optional[datetime]) -> AgentState:
        try:
            state = self._parse(path, now)
        except FileNotFoundError:
            return AgentState.default(domain)
        except (ValueError, UnicodeDecodeError) as exc:
            quarantine = path.with_name(f"{STATE_FILE}.corrupt-{compact_timestamp(now)}")
            os.replace(path, quarantine)
            self._report_corrupt(domain, path, exc, quarantined_to=str(quarantine))
            return AgentState.default(domain)
        if state.agent_id != domain:
            raise ValueError(f"state document at {path} belongs to '{state.agent_id}', not '{domain}'")
        return state

    def atomic_update(
        self,
        domain: str,
        mutator: Mutator,
        timeout: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> AgentState:
        """Apply mutator to the current (or default) document and persist it atomically.

        Raises filelock.Timeout if the domain lock cannot be taken in time;
        the previous document is untouched in that case.
        """
        path = self.path(domain)
        with self.lock(domain, timeout):
            state = self._read_for_update(domain, path, now)
            result = mutator(state)
            if result is None:
                result = state
            if result.agent_id != domain:
                raise ValueError(f"refusing to persist agentId '{result.agent_id}' under domain '{domain}'")
            result.refresh_staleness(now)
            atomic_write_json(path, result.to_dict())
        return result


def update_with_retry(
    store: StateStore,
    domain: str,
    mutator: Mutator,
    attempts: int = 3,
    retry_delay: float = 0.2,
    now: Optional[datetime] = None,
) -> AgentState:
    """atomic_update with bounded retries on lock contention and transient I/O errors.

    Exhaustion is recorded in the ops log and raised as StateUpdateFailed.
    """
    last_exc: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return store.atomic_update(domain, mutator, now=now)
        except (Timeout, OSError) as exc:
            last_exc = exc
            log.warning("state update for %s failed (attempt %d/%d): %s", domain, attempt, attempts, exc)
            if attempt < attempts:
                time.sleep(retry_delay * attempt)
    if store.ops is not None:
        store.ops.record("state_update_failed", "error", domain=domain, attempts=attempts, error=str(last_exc))
    raise StateUpdateFailed(domain, attempts, last_exc)
