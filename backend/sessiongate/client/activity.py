"""User activity relay feeding the inactivity timer."""

from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sessiongate.client.timer import TimerCoordinator

logger = logging.getLogger(__name__)


class ActivityKind(str, enum.Enum):
    """Interaction kinds that count as user activity."""

    POINTER_PRESS = "pointer-press"
    KEY_PRESS = "key-press"
    SCROLL = "scroll"
    CLICK = "click"


@dataclass(frozen=True)
class ActivityEvent:
    kind: ActivityKind
    timestamp: float


class ActivityMonitor:
    """Forwards activity to the timer as a reset, except while it is warning.

    Holds no state of its own; only ``TimerCoordinator.dismiss()`` or a direct
    ``reset()`` can end the warning.
    """

    def __init__(
        self,
        coordinator: TimerCoordinator,
        kinds: Iterable[ActivityKind | str] | None = None,
    ):
        self.coordinator = coordinator
        if kinds is None:
            self.kinds = coordinator.config.activity_kinds
        else:
            self.kinds = frozenset(ActivityKind(k) for k in kinds)

    def handle(self, event: ActivityEvent) -> bool:
        """Relay one event. Returns False when it was dropped."""
        if event.kind not in self.kinds:
            return False
        if self.coordinator.warning_active:
            logger.debug(f"Ignoring {event.kind.value} during inactivity warning")
            return False
        self.coordinator.reset()
        return True

    def record(self, kind: ActivityKind | str) -> bool:
        """Build an event stamped with the scheduler clock and relay it."""
        event = ActivityEvent(ActivityKind(kind), self.coordinator.scheduler.now())
        return self.handle(event)
