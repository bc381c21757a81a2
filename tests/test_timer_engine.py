from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from jobclock.db.models import JobStatus
from jobclock.timers import (
    InvalidDurationError,
    JobTimerState,
    ManualAdjust,
    PauseOrStop,
    ResetTotal,
    SetStatus,
    Start,
    TimerError,
    reconcile,
    reconcile_detailed,
)

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def test_start_pause_start_pause_accumulates_both_intervals() -> None:
    state = JobTimerState()
    state = reconcile(state, Start(), at(0))
    state = reconcile(state, PauseOrStop(), at(10))
    assert state == JobTimerState(accumulated_ms=10_000, running_since=None, status=JobStatus.PAUSED)

    state = reconcile(state, Start(), at(20))
    state = reconcile(state, PauseOrStop(), at(25))
    assert state.accumulated_ms == 15_000
    assert state.running_since is None
    assert state.status == JobStatus.PAUSED


def test_double_start_keeps_original_running_instant() -> None:
    state = reconcile(JobTimerState(), Start(), at(0))
    state = reconcile(state, Start(), at(5))
    assert state.running_since == at(0)

    state = reconcile(state, PauseOrStop(), at(10))
    assert state.accumulated_ms == 10_000


def test_clock_skew_clamps_delta_to_zero() -> None:
    state = JobTimerState(accumulated_ms=5_000, running_since=at(100), status=JobStatus.ACTIVE)
    paused = reconcile(state, PauseOrStop(), at(50))
    assert paused == JobTimerState(accumulated_ms=5_000, running_since=None, status=JobStatus.PAUSED)


def test_manual_adjust_while_running_keeps_running_since() -> None:
    state = JobTimerState(accumulated_ms=60_000, running_since=at(0), status=JobStatus.ACTIVE)
    adjusted = reconcile(state, ManualAdjust(delta_ms=30_000), at(10))
    assert adjusted.accumulated_ms == 90_000
    assert adjusted.running_since == at(0)
    assert adjusted.status == JobStatus.ACTIVE

    stopped = reconcile(adjusted, PauseOrStop(), at(20))
    assert stopped.accumulated_ms == 110_000


@pytest.mark.parametrize("delta_ms", [0, -1, -60_000])
def test_manual_adjust_rejects_non_positive_amounts(delta_ms: int) -> None:
    with pytest.raises(InvalidDurationError):
        reconcile(JobTimerState(), ManualAdjust(delta_ms=delta_ms), at(0))


def test_invalid_duration_is_a_timer_error() -> None:
    assert issubclass(InvalidDurationError, TimerError)


def test_set_status_done_while_running_commits_elapsed_time() -> None:
    state = JobTimerState(accumulated_ms=1_000, running_since=at(0), status=JobStatus.ACTIVE)
    done = reconcile(state, SetStatus(status=JobStatus.DONE), at(30))
    assert done == JobTimerState(accumulated_ms=31_000, running_since=None, status=JobStatus.DONE)


def test_set_status_matches_pause_or_stop_for_paused() -> None:
    state = JobTimerState(accumulated_ms=2_500, running_since=at(1), status=JobStatus.ACTIVE)
    assert reconcile(state, SetStatus(status=JobStatus.PAUSED), at(9)) == reconcile(state, PauseOrStop(), at(9))


def test_set_status_active_matches_start() -> None:
    idle = JobTimerState(accumulated_ms=7_000, running_since=None, status=JobStatus.PAUSED)
    assert reconcile(idle, SetStatus(status=JobStatus.ACTIVE), at(4)) == reconcile(idle, Start(), at(4))

    running = reconcile(idle, Start(), at(0))
    assert reconcile(running, SetStatus(status=JobStatus.ACTIVE), at(4)) == running


def test_set_status_on_stopped_job_only_changes_status() -> None:
    state = JobTimerState(accumulated_ms=4_000, running_since=None, status=JobStatus.PAUSED)
    done = reconcile(state, SetStatus(status=JobStatus.DONE), at(100))
    assert done == JobTimerState(accumulated_ms=4_000, running_since=None, status=JobStatus.DONE)


def test_start_reopens_done_job() -> None:
    state = JobTimerState(accumulated_ms=4_000, running_since=None, status=JobStatus.DONE)
    started = reconcile(state, Start(), at(3))
    assert started.status == JobStatus.ACTIVE
    assert started.running_since == at(3)


def test_reset_total_clears_everything() -> None:
    state = JobTimerState(accumulated_ms=99_000, running_since=at(0), status=JobStatus.ACTIVE)
    reset = reconcile(state, ResetTotal(), at(60))
    assert reset == JobTimerState(accumulated_ms=0, running_since=None, status=JobStatus.PAUSED)


@pytest.mark.parametrize(
    "transition",
    [Start(), PauseOrStop(), SetStatus(status=JobStatus.DONE), SetStatus(status=JobStatus.ACTIVE), ResetTotal()],
)
def test_transitions_are_idempotent_at_the_same_instant(transition) -> None:
    states = [
        JobTimerState(),
        JobTimerState(accumulated_ms=5_000, running_since=at(0), status=JobStatus.ACTIVE),
        JobTimerState(accumulated_ms=5_000, running_since=None, status=JobStatus.PAUSED),
    ]
    for state in states:
        once = reconcile(state, transition, at(10))
        assert reconcile(once, transition, at(10)) == once


def test_pause_twice_commits_once() -> None:
    state = reconcile(JobTimerState(), Start(), at(0))
    first = reconcile(state, PauseOrStop(), at(8))
    second = reconcile(first, PauseOrStop(), at(12))
    assert first.accumulated_ms == 8_000
    assert second == first


def test_accumulated_total_never_decreases_without_reset() -> None:
    transitions = [Start(), ManualAdjust(delta_ms=500), PauseOrStop(), SetStatus(status=JobStatus.DONE), Start(), PauseOrStop()]
    state = JobTimerState()
    for offset, transition in enumerate(transitions):
        before = state.accumulated_ms
        state = reconcile(state, transition, at(offset * 3))
        assert state.accumulated_ms >= before
        assert state.status == JobStatus.ACTIVE or state.running_since is None


def test_reconcile_does_not_mutate_its_input() -> None:
    state = JobTimerState(accumulated_ms=1_000, running_since=at(0), status=JobStatus.ACTIVE)
    reconcile(state, PauseOrStop(), at(5))
    assert state == JobTimerState(accumulated_ms=1_000, running_since=at(0), status=JobStatus.ACTIVE)


def test_reconcile_detailed_reports_committed_delta() -> None:
    running = reconcile(JobTimerState(), Start(), at(0))
    outcome = reconcile_detailed(running, PauseOrStop(), at(12.5))
    assert outcome.committed_ms == 12_500
    assert outcome.stopped
    assert not outcome.started

    start_outcome = reconcile_detailed(outcome.after, Start(), at(20))
    assert start_outcome.started
    assert start_outcome.committed_ms == 0


def test_naive_and_offset_datetimes_are_treated_as_utc() -> None:
    running = reconcile(JobTimerState(), Start(), datetime(2026, 3, 2, 9, 0, 0))
    assert running.running_since == T0

    plus_two = timezone(timedelta(hours=2))
    stopped = reconcile(running, PauseOrStop(), datetime(2026, 3, 2, 11, 0, 4, tzinfo=plus_two))
    assert stopped.accumulated_ms == 4_000


def test_negative_accumulated_state_is_rejected() -> None:
    with pytest.raises(TimerError):
        reconcile(JobTimerState(accumulated_ms=-1), Start(), at(0))


def test_unknown_transition_type_is_rejected() -> None:
    with pytest.raises(TypeError):
        reconcile(JobTimerState(), object(), at(0))  # type: ignore[arg-type]
