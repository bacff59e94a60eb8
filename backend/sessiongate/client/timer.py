"""Inactivity timer: warns before an idle session is terminated.

Phases:
    IDLE        no session, no timers
    MONITORING  one timer pending at the warning deadline
    WARNING     counting down; one tick pending at the next whole tick boundary
    EXPIRED     termination callback invoked, waiting for on_session_end()

The final countdown tick is the only path into EXPIRED. There is no separate
logout timer, so the termination callback cannot fire twice. Every cancellation
bumps a generation counter; a callback from an older generation does nothing
even if its timer was already being delivered.
"""

import enum
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sessiongate.client.activity import ActivityKind
from sessiongate.client.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

DEFAULT_WARNING_OFFSET = 29 * 60
DEFAULT_LOGOUT_OFFSET = 30 * 60
DEFAULT_COUNTDOWN_DURATION = 60
DEFAULT_TICK_INTERVAL = 1.0


class Phase(str, enum.Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    WARNING = "warning"
    EXPIRED = "expired"


@dataclass(frozen=True)
class TimerConfig:
    """Timer constants.

    ``countdown_duration`` is a number of ticks; the logout offset must equal
    the warning offset plus the whole countdown.
    """

    warning_offset: float = DEFAULT_WARNING_OFFSET
    logout_offset: float = DEFAULT_LOGOUT_OFFSET
    countdown_duration: int = DEFAULT_COUNTDOWN_DURATION
    tick_interval: float = DEFAULT_TICK_INTERVAL
    activity_kinds: frozenset[ActivityKind] = field(default_factory=lambda: frozenset(ActivityKind))

    def __post_init__(self) -> None:
        if self.warning_offset <= 0:
            raise ValueError("warning_offset must be positive")
        if self.tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        if self.countdown_duration < 1:
            raise ValueError("countdown_duration must be at least one tick")
        expected = self.warning_offset + self.countdown_duration * self.tick_interval
        if not math.isclose(self.logout_offset, expected, abs_tol=1e-9):
            raise ValueError(
                f"logout_offset ({self.logout_offset}) must equal warning_offset + "
                f"countdown_duration * tick_interval ({expected})"
            )
        object.__setattr__(
            self, "activity_kinds", frozenset(ActivityKind(k) for k in self.activity_kinds)
        )

    @property
    def countdown_seconds(self) -> float:
        return self.countdown_duration * self.tick_interval


@dataclass(frozen=True)
class TimerState:
    """Snapshot of the timer. ``countdown_remaining`` is None outside WARNING."""

    phase: Phase
    warning_deadline: float | None = None
    logout_deadline: float | None = None
    countdown_remaining: int | None = None


class TimerCoordinator:
    """Inactivity state machine for one authenticated client context."""

    def __init__(
        self,
        scheduler: Scheduler,
        on_expire: Callable[[], Any],
        config: TimerConfig | None = None,
        on_change: Callable[[TimerState], Any] | None = None,
    ):
        self.scheduler = scheduler
        self.config = config or TimerConfig()
        self._on_expire = on_expire
        self._on_change = on_change

        self._phase = Phase.IDLE
        self._session: Any = None
        self._handle: TimerHandle | None = None
        self._generation = 0
        self._warning_deadline: float | None = None
        self._logout_deadline: float | None = None
        self._countdown: int | None = None

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def warning_active(self) -> bool:
        return self._phase is Phase.WARNING

    @property
    def session(self) -> Any:
        return self._session

    @property
    def pending_timers(self) -> int:
        return 1 if self._handle is not None and self._handle.pending else 0

    @property
    def state(self) -> TimerState:
        return TimerState(
            phase=self._phase,
            warning_deadline=self._warning_deadline,
            logout_deadline=self._logout_deadline,
            countdown_remaining=self._countdown if self._phase is Phase.WARNING else None,
        )

    # Public operations

    def reset(self) -> None:
        """Re-arm from now. No-op without a session or once expired."""
        if self._phase in (Phase.IDLE, Phase.EXPIRED):
            return
        self._arm()

    def dismiss(self) -> None:
        """Acknowledge the warning. No-op outside WARNING."""
        if self._phase is not Phase.WARNING:
            return
        logger.debug("Inactivity warning dismissed")
        self._arm()

    def on_session_start(self, session: Any = None) -> None:
        self._session = session
        self._arm()

    def on_session_end(self, session: Any = None) -> None:
        self._cancel()
        self._session = None
        self._phase = Phase.IDLE
        self._warning_deadline = None
        self._logout_deadline = None
        self._countdown = None
        self._notify()

    # Transitions

    def _cancel(self) -> None:
        self._generation += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _arm(self) -> None:
        self._cancel()
        now = self.scheduler.now()
        self._warning_deadline = now + self.config.warning_offset
        self._logout_deadline = self._warning_deadline + self.config.countdown_seconds
        self._countdown = None
        self._phase = Phase.MONITORING

        generation = self._generation
        self._handle = self.scheduler.call_at(
            self._warning_deadline, lambda: self._on_warning(generation)
        )
        self._notify()

    def _on_warning(self, generation: int) -> None:
        if generation != self._generation or self._phase is not Phase.MONITORING:
            return
        self._handle = None
        self._phase = Phase.WARNING
        self._countdown = self.config.countdown_duration
        logger.info(f"Inactivity warning: logout in {self.config.countdown_seconds:g}s")
        self._schedule_tick(1)
        self._notify()

    def _schedule_tick(self, boundary: int) -> None:
        assert self._warning_deadline is not None
        deadline = self._warning_deadline + boundary * self.config.tick_interval
        generation = self._generation
        self._handle = self.scheduler.call_at(
            deadline, lambda: self._on_tick(generation, boundary)
        )

    def _remaining_at(self, now: float) -> int:
        assert self._logout_deadline is not None
        ticks_left = (self._logout_deadline - now) / self.config.tick_interval
        return max(0, math.ceil(round(ticks_left, 6)))

    def _on_tick(self, generation: int, boundary: int) -> None:
        if generation != self._generation or self._phase is not Phase.WARNING:
            return
        self._handle = None
        # Derived from the clock so a late delivery skips ticks instead of drifting
        remaining = self._remaining_at(self.scheduler.now())
        self._countdown = remaining
        if remaining == 0:
            self._expire()
            return
        next_boundary = self.config.countdown_duration - remaining + 1
        self._schedule_tick(max(boundary + 1, next_boundary))
        self._notify()

    def _expire(self) -> None:
        if self._phase is not Phase.WARNING:
            return
        self._cancel()
        self._phase = Phase.EXPIRED
        self._countdown = None
        logger.info("Session expired after inactivity")
        try:
            self._notify()
        except Exception:
            logger.exception("Expiry observer failed")
        try:
            self._on_expire()
        except Exception:
            logger.exception("Termination callback failed")

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.state)
