from jobclock.timers.engine import InvalidDurationError, TimerError, reconcile, reconcile_detailed
from jobclock.timers.projection import Projection, project, project_view
from jobclock.timers.types import (
    JobTimerState,
    ManualAdjust,
    PauseOrStop,
    Reconciliation,
    ResetTotal,
    SetStatus,
    Start,
    TimerTransition,
)

__all__ = [
    "InvalidDurationError",
    "TimerError",
    "reconcile",
    "reconcile_detailed",
    "Projection",
    "project",
    "project_view",
    "JobTimerState",
    "TimerTransition",
    "Start",
    "PauseOrStop",
    "SetStatus",
    "ManualAdjust",
    "ResetTotal",
    "Reconciliation",
]
