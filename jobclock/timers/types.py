from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union

from jobclock.db.models import JobStatus


@dataclass(frozen=True, slots=True)
class JobTimerState:
    accumulated_ms: int = 0
    running_since: datetime | None = None
    status: JobStatus = JobStatus.ACTIVE

    @property
    def is_running(self) -> bool:
        return self.running_since is not None


@dataclass(frozen=True, slots=True)
class Start:
    pass


@dataclass(frozen=True, slots=True)
class PauseOrStop:
    pass


@dataclass(frozen=True, slots=True)
class SetStatus:
    status: JobStatus


@dataclass(frozen=True, slots=True)
class ManualAdjust:
    delta_ms: int


@dataclass(frozen=True, slots=True)
class ResetTotal:
    pass


TimerTransition = Union[Start, PauseOrStop, SetStatus, ManualAdjust, ResetTotal]


@dataclass(frozen=True, slots=True)
class Reconciliation:
    """Outcome of folding one transition into a state.

    ``committed_ms`` is the live delta moved into ``accumulated_ms`` by this
    transition (0 when nothing was running).
    """

    before: JobTimerState
    after: JobTimerState
    transition: TimerTransition
    committed_ms: int = 0

    @property
    def started(self) -> bool:
        return not self.before.is_running and self.after.is_running

    @property
    def stopped(self) -> bool:
        return self.before.is_running and not self.after.is_running
