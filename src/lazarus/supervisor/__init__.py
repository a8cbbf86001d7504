from lazarus.supervisor.control import SupervisorControl, SupervisorStatus, detached_spawner
from lazarus.supervisor.machine import (
    Event,
    Phase,
    SupervisorState,
    backoff_delay,
    build_launch_command,
    transition,
)
from lazarus.supervisor.markers import DomainMarkers
from lazarus.supervisor.runner import Supervisor

__all__ = [
    "DomainMarkers",
    "Event",
    "Phase",
    "Supervisor",
    "SupervisorControl",
    "SupervisorState",
    "SupervisorStatus",
    "backoff_delay",
    "build_launch_command",
    "detached_spawner",
    "transition",
]
