from __future__ import annotations

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from jobclock.db.models import JobStatus
from jobclock.drafts import DraftPhase, DraftSnapshotStore, DraftStateError, DraftTimer
from jobclock.jobs.service import DraftAlreadyCommittedError
from jobclock.timers import JobTimerState

T0 = datetime(2026, 3, 4, 9, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


class RecordingCommitter:
    def __init__(self) -> None:
        self.calls: list[tuple[int, str, int]] = []
        self.fail_with: Exception | None = None
        self.delay = 0.0

    def __call__(self, job_id: int, session_id: str, seconds: int) -> JobTimerState:
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append((job_id, session_id, seconds))
        return JobTimerState(accumulated_ms=sum(call[2] for call in self.calls) * 1000, status=JobStatus.ACTIVE)


def make_timer(tmp_path: Path, committer: RecordingCommitter, job_id: int = 7) -> DraftTimer:
    return DraftTimer(job_id, DraftSnapshotStore(tmp_path / "drafts"), committer, clock=lambda: T0)


def test_start_pause_save_commits_buffered_seconds_once(tmp_path: Path) -> None:
    committer = RecordingCommitter()
    timer = make_timer(tmp_path, committer)

    started = timer.start(at(0))
    assert started.phase == DraftPhase.RUNNING
    assert started.session_id

    assert timer.tick(at(4.2)).buffered_seconds == 4
    assert timer.display(at(4.2)) == "0:00:04"
    paused = timer.pause(at(10.7))
    assert paused.phase == DraftPhase.PAUSED
    assert paused.buffered_seconds == 10

    state = timer.save(at(30))
    assert committer.calls == [(7, started.session_id, 10)]
    assert state.accumulated_ms == 10_000
    assert timer.phase == DraftPhase.SAVED
    assert timer.snapshot.committed is True
    assert timer.buffered_seconds == 0

    with pytest.raises(DraftStateError):
        timer.save(at(31))
    assert len(committer.calls) == 1


def test_save_while_running_pauses_first(tmp_path: Path) -> None:
    committer = RecordingCommitter()
    timer = make_timer(tmp_path, committer)
    timer.start(at(0))

    timer.save(at(61.9))

    assert committer.calls[0][2] == 61


def test_saved_flag_survives_reload(tmp_path: Path) -> None:
    committer = RecordingCommitter()
    timer = make_timer(tmp_path, committer)
    timer.start(at(0))
    timer.save(at(5))

    reloaded = make_timer(tmp_path, committer)
    assert reloaded.snapshot.committed is True
    with pytest.raises(DraftStateError):
        reloaded.save(at(6))
    assert len(committer.calls) == 1


def test_resume_keeps_session_and_new_start_gets_fresh_session(tmp_path: Path) -> None:
    committer = RecordingCommitter()
    timer = make_timer(tmp_path, committer)

    first_session = timer.start(at(0)).session_id
    timer.pause(at(3))
    resumed = timer.start(at(10))
    assert resumed.session_id == first_session
    assert resumed.base_at_start == 3

    timer.pause(at(12))
    assert timer.buffered_seconds == 5
    timer.save(at(13))

    next_session = timer.start(at(20))
    assert next_session.session_id != first_session
    assert next_session.buffered_seconds == 0
    assert next_session.committed is False


def test_illegal_transitions_are_rejected(tmp_path: Path) -> None:
    timer = make_timer(tmp_path, RecordingCommitter())

    with pytest.raises(DraftStateError):
        timer.pause(at(0))
    with pytest.raises(DraftStateError):
        timer.save(at(0))

    timer.start(at(0))
    with pytest.raises(DraftStateError):
        timer.start(at(1))

    timer.pause(at(0.5))
    with pytest.raises(DraftStateError):
        timer.save(at(1))


def test_failed_commit_keeps_buffer_for_retry(tmp_path: Path) -> None:
    committer = RecordingCommitter()
    timer = make_timer(tmp_path, committer)
    session_id = timer.start(at(0)).session_id
    timer.pause(at(9))

    committer.fail_with = ConnectionError("server unreachable")
    with pytest.raises(ConnectionError):
        timer.save(at(10))

    reloaded = make_timer(tmp_path, committer)
    assert reloaded.phase == DraftPhase.PAUSED
    assert reloaded.snapshot.committed is False
    assert reloaded.buffered_seconds == 9

    committer.fail_with = None
    reloaded.save(at(11))
    assert committer.calls == [(7, session_id, 9)]


def test_failed_commit_of_a_running_draft_leaves_it_paused(tmp_path: Path) -> None:
    committer = RecordingCommitter()
    timer = make_timer(tmp_path, committer)
    session_id = timer.start(at(0)).session_id

    committer.fail_with = ConnectionError("server unreachable")
    with pytest.raises(ConnectionError):
        timer.save(at(12))

    reloaded = make_timer(tmp_path, committer)
    assert reloaded.phase == DraftPhase.PAUSED
    assert reloaded.snapshot.committed is False
    assert reloaded.buffered_seconds == 12
    assert reloaded.display(at(500)) == "0:00:12"

    committer.fail_with = None
    reloaded.save(at(600))
    assert committer.calls == [(7, session_id, 12)]


def test_server_side_replay_marks_draft_committed(tmp_path: Path) -> None:
    committer = RecordingCommitter()
    timer = make_timer(tmp_path, committer)
    timer.start(at(0))
    timer.pause(at(4))

    committer.fail_with = DraftAlreadyCommittedError("already committed")
    with pytest.raises(DraftAlreadyCommittedError):
        timer.save(at(5))

    assert timer.phase == DraftPhase.SAVED
    assert timer.snapshot.committed is True
    assert timer.buffered_seconds == 0


def test_rehydrate_recomputes_running_time_from_wall_clock(tmp_path: Path) -> None:
    committer = RecordingCommitter()
    timer = make_timer(tmp_path, committer)
    timer.start(at(0))
    timer.pause(at(20))
    timer.start(at(100))

    reloaded = make_timer(tmp_path, committer)
    snapshot = reloaded.rehydrate(at(145.5))
    assert snapshot.phase == DraftPhase.RUNNING
    assert snapshot.buffered_seconds == 65


def test_other_tab_changes_are_picked_up(tmp_path: Path) -> None:
    committer = RecordingCommitter()
    tab_a = make_timer(tmp_path, committer)
    tab_b = make_timer(tmp_path, committer)

    tab_a.start(at(0))
    assert tab_b.phase == DraftPhase.IDLE
    assert tab_b.refresh_if_changed(at(3)) is True
    assert tab_b.phase == DraftPhase.RUNNING
    assert tab_b.refresh_if_changed(at(3)) is False

    tab_b.pause(at(8))
    with pytest.raises(DraftStateError):
        tab_a.pause(at(9))
    assert tab_a.phase == DraftPhase.PAUSED
    assert tab_a.buffered_seconds == 8


def test_concurrent_saves_from_two_tabs_commit_once(tmp_path: Path) -> None:
    committer = RecordingCommitter()
    committer.delay = 0.05
    tab_a = make_timer(tmp_path, committer)
    tab_b = make_timer(tmp_path, committer)
    tab_a.start(at(0))
    tab_a.pause(at(12))

    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def save(timer: DraftTimer) -> None:
        barrier.wait(timeout=2)
        try:
            timer.save(at(13))
            result = "saved"
        except DraftStateError:
            result = "rejected"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=save, args=(tab,)) for tab in (tab_a, tab_b)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["rejected", "saved"]
    assert len(committer.calls) == 1


def test_reset_discards_uncommitted_time(tmp_path: Path) -> None:
    committer = RecordingCommitter()
    timer = make_timer(tmp_path, committer)
    timer.start(at(0))
    timer.pause(at(30))

    reset = timer.reset()

    assert reset.phase == DraftPhase.IDLE
    assert reset.buffered_seconds == 0
    assert reset.session_id is None
    assert make_timer(tmp_path, committer).phase == DraftPhase.IDLE


def test_unreadable_snapshot_falls_back_to_idle(tmp_path: Path) -> None:
    store = DraftSnapshotStore(tmp_path / "drafts")
    store.path_for(3).write_text("{not json", encoding="utf-8")

    timer = DraftTimer(3, store, RecordingCommitter(), clock=lambda: T0)

    assert timer.phase == DraftPhase.IDLE
    assert timer.buffered_seconds == 0


def test_snapshot_file_round_trips_fields(tmp_path: Path) -> None:
    store = DraftSnapshotStore(tmp_path / "drafts")
    timer = DraftTimer(5, store, RecordingCommitter(), clock=lambda: T0)
    written = timer.start(at(0))

    loaded = DraftSnapshotStore(tmp_path / "drafts").load(5)

    assert loaded.session_id == written.session_id
    assert loaded.phase == DraftPhase.RUNNING
    assert loaded.started_at_local == at(0)
    assert loaded.revision == written.revision
    assert '"running": true' in store.path_for(5).read_text(encoding="utf-8")


def test_ticker_drives_ticks_until_stopped(tmp_path: Path) -> None:
    timer = make_timer(tmp_path, RecordingCommitter())
    timer.start(at(0))
    seen: list[int] = []

    async def scenario() -> None:
        stop = asyncio.Event()

        def on_tick(snapshot) -> None:
            seen.append(snapshot.buffered_seconds)
            if len(seen) >= 3:
                stop.set()

        ticker = asyncio.create_task(timer.run_ticker(on_tick, interval_seconds=0.01, stop_event=stop))
        await asyncio.sleep(0)
        with pytest.raises(DraftStateError):
            await timer.run_ticker(on_tick, interval_seconds=0.01, stop_event=stop)
        await asyncio.wait_for(ticker, timeout=2)

    asyncio.run(scenario())

    assert len(seen) == 3


def test_ticker_keeps_event_loop_responsive_while_lock_is_held(tmp_path: Path) -> None:
    store = DraftSnapshotStore(tmp_path / "drafts")
    timer = DraftTimer(7, store, RecordingCommitter(), clock=lambda: T0)
    timer.start(at(0))
    held = threading.Event()
    seen: list[int] = []

    def hold_lock() -> None:
        with store.locked(7):
            held.set()
            time.sleep(0.5)

    holder = threading.Thread(target=hold_lock)
    holder.start()

    async def scenario() -> float:
        await asyncio.to_thread(held.wait, 2)
        stop = asyncio.Event()
        ticker = asyncio.create_task(
            timer.run_ticker(lambda snapshot: seen.append(snapshot.buffered_seconds), interval_seconds=0.01, stop_event=stop)
        )
        await asyncio.sleep(0)
        started = time.monotonic()
        await asyncio.sleep(0.05)
        elapsed = time.monotonic() - started
        stop.set()
        await asyncio.wait_for(ticker, timeout=3)
        return elapsed

    elapsed = asyncio.run(scenario())
    holder.join(timeout=3)

    assert elapsed < 0.3
    assert seen
