"""Exception types shared across lazarus components."""

from __future__ import annotations


class LazarusError(Exception):
    """Base class for errors raised by lazarus."""


class ConfigError(LazarusError, ValueError):
    """Config file is present but unusable."""


class StateUpdateFailed(LazarusError):
    """atomic_update could not complete within the allowed attempts."""

    def __init__(self, domain: str, attempts: int, cause: BaseException | None = None) -> None:
        self.domain = domain
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"state update for '{domain}' failed after {attempts} attempt(s): {cause}")


class FragmentInvalid(LazarusError, ValueError):
    """Summary fragment does not match the AgentState shape."""


class InvalidTransition(LazarusError):
    """Supervisor state machine received an event its phase does not accept."""

    def __init__(self, phase: object, event: object) -> None:
        self.phase = phase
        self.event = event
        super().__init__(f"event {event} is not valid in phase {phase}")
