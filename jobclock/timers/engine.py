"""Pure accrual arithmetic for job timers.

Every entry point that changes a job's time goes through :func:`reconcile`;
callers are responsible for persisting the returned state atomically.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from jobclock.db.models import JobStatus
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

logger = logging.getLogger(__name__)


class TimerError(ValueError):
    pass


class InvalidDurationError(TimerError):
    pass


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_ms(since: datetime, now: datetime) -> int:
    """Milliseconds from ``since`` to ``now``, clamped at zero for clock skew."""
    delta = coerce_utc(now) - coerce_utc(since)
    return max(0, delta // timedelta(milliseconds=1))


def _commit_running(state: JobTimerState, now: datetime) -> tuple[JobTimerState, int]:
    if state.running_since is None:
        return state, 0
    delta = elapsed_ms(state.running_since, now)
    return replace(state, accumulated_ms=state.accumulated_ms + delta, running_since=None), delta


def _start(state: JobTimerState, now: datetime) -> JobTimerState:
    if state.running_since is not None:
        return replace(state, status=JobStatus.ACTIVE)
    return replace(state, running_since=coerce_utc(now), status=JobStatus.ACTIVE)


def reconcile_detailed(state: JobTimerState, transition: TimerTransition, now: datetime) -> Reconciliation:
    if state.accumulated_ms < 0:
        raise TimerError("accumulated_ms must be >= 0")

    committed = 0
    if isinstance(transition, Start):
        after = _start(state, now)
    elif isinstance(transition, PauseOrStop):
        if state.running_since is None:
            after = state
        else:
            after, committed = _commit_running(state, now)
            after = replace(after, status=JobStatus.PAUSED)
    elif isinstance(transition, SetStatus):
        target = JobStatus(transition.status)
        if target != JobStatus.ACTIVE:
            after, committed = _commit_running(state, now)
            after = replace(after, status=target)
        else:
            after = _start(state, now)
    elif isinstance(transition, ManualAdjust):
        if transition.delta_ms <= 0:
            raise InvalidDurationError(f"Manual adjustment must be positive, got {transition.delta_ms} ms")
        after = replace(state, accumulated_ms=state.accumulated_ms + int(transition.delta_ms))
    elif isinstance(transition, ResetTotal):
        after = JobTimerState(accumulated_ms=0, running_since=None, status=JobStatus.PAUSED)
    else:
        raise TypeError(f"Unsupported timer transition: {transition!r}")

    logger.debug("Reconciled %s: %s -> %s (committed %d ms)", type(transition).__name__, state, after, committed)
    return Reconciliation(before=state, after=after, transition=transition, committed_ms=committed)


def reconcile(state: JobTimerState, transition: TimerTransition, now: datetime) -> JobTimerState:
    return reconcile_detailed(state, transition, now).after
