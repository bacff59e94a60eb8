"""Client-side session lifecycle: activity relay, inactivity timer, API client."""

from sessiongate.client.activity import ActivityEvent, ActivityKind, ActivityMonitor
from sessiongate.client.scheduler import (
    AsyncioScheduler,
    Scheduler,
    TimerHandle,
    VirtualScheduler,
)
from sessiongate.client.session import SessionClient
from sessiongate.client.timer import Phase, TimerConfig, TimerCoordinator, TimerState

__all__ = [
    "ActivityEvent",
    "ActivityKind",
    "ActivityMonitor",
    "AsyncioScheduler",
    "Scheduler",
    "TimerHandle",
    "VirtualScheduler",
    "SessionClient",
    "Phase",
    "TimerConfig",
    "TimerCoordinator",
    "TimerState",
]
