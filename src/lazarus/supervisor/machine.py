"""Supervisor state machine — phases, events, and the single transition function.

    Starting ──launched──▶ Running ──exited_ok──▶ CleanExit
        │                     │
        └──exited_fail──┐     └──exited_fail──▶ CrashedRetry ──backoff_elapsed──▶ Starting
                        ▼
               CrashedRetry, or SafeMode once crash_count reaches the threshold

    SafeMode ──operator_reset──▶ Starting
    Starting, Running, CrashedRetry ──stopped──▶ CleanExit   (operator SIGTERM)
    CleanExit ──restart_requested──▶ Starting

``restart_requested`` is a no-op everywhere else: a supervisor that is
already starting, running, or about to retry never launches a second agent.
Everything here is pure; the runner owns the side effects.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence

from lazarus.errors import InvalidTransition


class Phase(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    CLEAN_EXIT = "clean_exit"
    CRASHED_RETRY = "crashed_retry"
    SAFE_MODE = "safe_mode"


class Event(str, Enum):
    LAUNCHED = "launched"
    EXITED_OK = "exited_ok"
    EXITED_FAIL = "exited_fail"
    STABILIZED = "stabilized"
    BACKOFF_ELAPSED = "backoff_elapsed"
    RESTART_REQUESTED = "restart_requested"
    OPERATOR_RESET = "operator_reset"
    STOPPED = "stopped"


ACTIVE_PHASES = frozenset({Phase.STARTING, Phase.RUNNING, Phase.CRASHED_RETRY})


@dataclass(frozen=True)
class SupervisorState:
    phase: Phase = Phase.STARTING
    crash_count: int = 0


def _crashed(state: SupervisorState, threshold: int) -> SupervisorState:
    crashes = state.crash_count + 1
    if crashes >= threshold:
        return SupervisorState(Phase.SAFE_MODE, crashes)
    return SupervisorState(Phase.CRASHED_RETRY, crashes)


def transition(state: SupervisorState, event: Event, threshold: int) -> SupervisorState:
    """Return the next state. Raises InvalidTransition for pairs the machine rejects."""
    phase = state.phase

    if event is Event.RESTART_REQUESTED:
        if phase is Phase.CLEAN_EXIT:
            return SupervisorState(Phase.STARTING, 0)
        return state

    if event is Event.OPERATOR_RESET:
        if phase is Phase.SAFE_MODE:
            return SupervisorState(Phase.STARTING, 0)
        return state

    if event is Event.STOPPED:
        if phase in ACTIVE_PHASES:
            return SupervisorState(Phase.CLEAN_EXIT, 0)
        return state

    if phase is Phase.STARTING:
        if event is Event.LAUNCHED:
            return replace(state, phase=Phase.RUNNING)
        if event is Event.EXITED_FAIL:
            return _crashed(state, threshold)
    elif phase is Phase.RUNNING:
        if event is Event.EXITED_OK:
            return SupervisorState(Phase.CLEAN_EXIT, 0)
        if event is Event.EXITED_FAIL:
            return _crashed(state, threshold)
        if event is Event.STABILIZED:
            return replace(state, crash_count=0)
    elif phase is Phase.CRASHED_RETRY:
        if event is Event.BACKOFF_ELAPSED:
            return replace(state, phase=Phase.STARTING)

    raise InvalidTransition(phase, event)


def backoff_delay(crash_count: int, base: float, cap: float) -> float:
    """Bounded exponential backoff: base, 2*base, 4*base ... capped at cap."""
    if crash_count <= 0:
        return 0.0
    return min(base * (2 ** (crash_count - 1)), cap)


def _strip_resume(argv: Sequence[str], resume_flag: str) -> list[str]:
    out: list[str] = []
    skip = False
    for arg in argv:
        if skip:
            skip = False
            continue
        if arg == resume_flag:
            skip = True
            continue
        if arg.startswith(resume_flag + "="):
            continue
        out.append(arg)
    return out


def build_launch_command(
    base_command: Sequence[str] | str,
    token: Optional[str],
    resume_flag: str = "--resume",
) -> list[str]:
    """Launch argv for one start: the base command plus at most one resume argument.

    Always derived from the base, never from the previous launch, so restarts
    cannot stack resume flags.
    """
    argv = shlex.split(base_command) if isinstance(base_command, str) else list(base_command)
    argv = _strip_resume(argv, resume_flag)
    if token:
        argv += [resume_flag, token]
    return argv
