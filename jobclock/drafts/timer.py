"""Client-local draft stopwatch that commits its buffered time exactly once.

Every operation starts by re-reading the durable snapshot and ends by writing
it back under the same file lock, so several tabs (processes) driving the same
job always act on one shared draft.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from jobclock.core.duration import format_duration
from jobclock.drafts.store import DraftPhase, DraftSnapshot, DraftSnapshotStore, LockedDraft
from jobclock.jobs.service import DraftAlreadyCommittedError
from jobclock.timers.engine import coerce_utc, elapsed_ms
from jobclock.timers.types import JobTimerState

logger = logging.getLogger(__name__)

DraftCommitter = Callable[[int, str, int], JobTimerState]


class DraftStateError(RuntimeError):
    pass


class DraftTimer:
    def __init__(
        self,
        job_id: int,
        store: DraftSnapshotStore,
        committer: DraftCommitter,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.job_id = job_id
        self._store = store
        self._committer = committer
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self._snapshot = DraftSnapshot(job_id=job_id)
        self._ticker_active = False
        self.rehydrate()

    def _now(self, now: datetime | None) -> datetime:
        return coerce_utc(now) if now is not None else coerce_utc(self._clock())

    def _projected_seconds(self, snapshot: DraftSnapshot, now: datetime) -> int:
        if snapshot.phase != DraftPhase.RUNNING or snapshot.started_at_local is None:
            return snapshot.buffered_seconds
        return snapshot.base_at_start + elapsed_ms(snapshot.started_at_local, now) // 1000

    def _read(self, draft: LockedDraft, now: datetime) -> DraftSnapshot:
        snapshot = draft.read()
        snapshot.buffered_seconds = self._projected_seconds(snapshot, now)
        self._store.mark_seen(snapshot)
        self._snapshot = replace(snapshot)
        return snapshot

    def _write(self, draft: LockedDraft, snapshot: DraftSnapshot) -> DraftSnapshot:
        written = draft.write(snapshot)
        self._store.mark_seen(written)
        self._snapshot = written
        return written

    @property
    def snapshot(self) -> DraftSnapshot:
        return self._snapshot

    @property
    def phase(self) -> DraftPhase:
        return self._snapshot.phase

    @property
    def buffered_seconds(self) -> int:
        return self._snapshot.buffered_seconds

    def rehydrate(self, now: datetime | None = None) -> DraftSnapshot:
        """Reload from the durable snapshot, recomputing running time from the wall clock."""
        effective_now = self._now(now)
        with self._store.locked(self.job_id) as draft:
            return self._read(draft, effective_now)

    def refresh_if_changed(self, now: datetime | None = None) -> bool:
        if not self._store.has_changed(self.job_id):
            return False
        self.rehydrate(now)
        return True

    def display(self, now: datetime | None = None) -> str:
        return format_duration(self._projected_seconds(self._snapshot, self._now(now)) * 1000)

    def start(self, now: datetime | None = None) -> DraftSnapshot:
        effective_now = self._now(now)
        with self._store.locked(self.job_id) as draft:
            snapshot = self._read(draft, effective_now)
            if snapshot.phase == DraftPhase.RUNNING:
                raise DraftStateError("Draft timer is already running")
            if snapshot.phase in (DraftPhase.IDLE, DraftPhase.SAVED):
                snapshot.session_id = uuid4().hex
                snapshot.buffered_seconds = 0
            snapshot.phase = DraftPhase.RUNNING
            snapshot.started_at_local = effective_now
            snapshot.base_at_start = snapshot.buffered_seconds
            snapshot.committed = False
            return self._write(draft, snapshot)

    def tick(self, now: datetime | None = None) -> DraftSnapshot:
        effective_now = self._now(now)
        with self._store.locked(self.job_id) as draft:
            stored_seconds = draft.read().buffered_seconds
            snapshot = self._read(draft, effective_now)
            if snapshot.phase == DraftPhase.RUNNING and snapshot.buffered_seconds != stored_seconds:
                return self._write(draft, snapshot)
        return snapshot

    def pause(self, now: datetime | None = None) -> DraftSnapshot:
        effective_now = self._now(now)
        with self._store.locked(self.job_id) as draft:
            snapshot = self._read(draft, effective_now)
            if snapshot.phase != DraftPhase.RUNNING:
                raise DraftStateError(f"Cannot pause a draft timer that is {snapshot.phase.value}")
            return self._write(draft, self._freeze(snapshot))

    def _freeze(self, snapshot: DraftSnapshot) -> DraftSnapshot:
        snapshot.phase = DraftPhase.PAUSED
        snapshot.started_at_local = None
        snapshot.base_at_start = snapshot.buffered_seconds
        return snapshot

    def save(self, now: datetime | None = None) -> JobTimerState:
        """Pause and commit the buffered seconds once for the current session.

        The snapshot lock is held across the commit so a second tab cannot
        commit the same session concurrently. If the committer raises, the
        draft stays paused with its seconds intact and ``committed`` unset.
        """
        effective_now = self._now(now)
        with self._store.locked(self.job_id) as draft:
            snapshot = self._read(draft, effective_now)
            if snapshot.committed or snapshot.phase == DraftPhase.SAVED:
                raise DraftStateError("Draft session already saved")
            if snapshot.phase not in (DraftPhase.RUNNING, DraftPhase.PAUSED) or snapshot.session_id is None:
                raise DraftStateError(f"Cannot save a draft timer that is {snapshot.phase.value}")

            if snapshot.phase == DraftPhase.RUNNING:
                snapshot = self._write(draft, self._freeze(snapshot))
            if snapshot.buffered_seconds <= 0:
                raise DraftStateError("Nothing to save: no time has been buffered")

            session_id = snapshot.session_id
            seconds = snapshot.buffered_seconds
            try:
                state = self._committer(self.job_id, session_id, seconds)
            except DraftAlreadyCommittedError:
                logger.warning("Draft session %s for job %s was already committed", session_id, self.job_id)
                self._write(draft, self._mark_committed(snapshot))
                raise

            self._write(draft, self._mark_committed(snapshot))
            logger.info("Saved draft session %s for job %s (%d s)", session_id, self.job_id, seconds)
            return state

    def _mark_committed(self, snapshot: DraftSnapshot) -> DraftSnapshot:
        snapshot.phase = DraftPhase.SAVED
        snapshot.committed = True
        snapshot.buffered_seconds = 0
        snapshot.base_at_start = 0
        snapshot.started_at_local = None
        return snapshot

    def reset(self) -> DraftSnapshot:
        """Drop an uncommitted draft and return to idle."""
        snapshot = self._store.discard(self.job_id)
        self._snapshot = snapshot
        return snapshot

    async def run_ticker(
        self,
        on_tick: Callable[[DraftSnapshot], None],
        *,
        interval_seconds: float = 1.0,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        if self._ticker_active:
            raise DraftStateError("A ticker is already running for this draft timer")
        stop = stop_event or asyncio.Event()
        self._ticker_active = True
        try:
            while not stop.is_set():
                snapshot = await asyncio.to_thread(self.tick)
                on_tick(snapshot)
                try:
                    await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
                except asyncio.TimeoutError:
                    continue
        finally:
            self._ticker_active = False
