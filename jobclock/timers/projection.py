from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from jobclock.core.duration import format_duration
from jobclock.timers.engine import coerce_utc, elapsed_ms
from jobclock.timers.types import JobTimerState


@dataclass(frozen=True, slots=True)
class Projection:
    display_ms: int
    running: bool
    computed_at: datetime

    @property
    def display(self) -> str:
        return format_duration(self.display_ms)


def project(state: JobTimerState, now: datetime) -> int:
    """Committed total plus the live delta since ``running_since``; never mutates ``state``."""
    if state.running_since is None:
        return state.accumulated_ms
    return state.accumulated_ms + elapsed_ms(state.running_since, now)


def project_view(state: JobTimerState, now: datetime) -> Projection:
    return Projection(display_ms=project(state, now), running=state.is_running, computed_at=coerce_utc(now))
