from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from jobclock.core.config import Settings, get_settings
from jobclock.core.duration import format_duration
from jobclock.jobs.types import JobSnapshot
from jobclock.timers.engine import coerce_utc
from jobclock.timers.projection import project
from jobclock.timers.types import JobTimerState

logger = logging.getLogger(__name__)

JobFetcher = Callable[[], JobSnapshot]


class LiveClock:
    """Locally ticking view of one job's timer between server round-trips.

    The display is always derived from the last authoritative state, never
    accumulated tick by tick, so a late or missed tick cannot drift it.
    Server states are ordered by the job's ``version``; an older one never
    replaces a newer one, whichever request finished last.
    """

    def __init__(
        self,
        job: JobSnapshot,
        fetch_job: JobFetcher,
        *,
        tick_seconds: float = 1.0,
        resync_seconds: float = 6.0,
        clock: Callable[[], datetime] | None = None,
    ):
        if tick_seconds <= 0 or resync_seconds <= 0:
            raise ValueError("tick_seconds and resync_seconds must be positive")
        self.job_id = job.id
        self._fetch_job = fetch_job
        self._tick_seconds = tick_seconds
        self._resync_interval = timedelta(seconds=resync_seconds)
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self._state = job.timer_state
        self._version = job.version
        self._synced_at = self._now()
        self._resync_task: asyncio.Task[bool] | None = None
        self.resync_failures = 0
        self.stale_discarded = 0

    @classmethod
    def from_settings(
        cls,
        job: JobSnapshot,
        fetch_job: JobFetcher,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> "LiveClock":
        settings = settings or get_settings()
        return cls(
            job,
            fetch_job,
            tick_seconds=settings.live_tick_seconds,
            resync_seconds=settings.resync_interval_seconds,
            clock=clock,
        )

    def _now(self, now: datetime | None = None) -> datetime:
        return coerce_utc(now) if now is not None else coerce_utc(self._clock())

    @property
    def state(self) -> JobTimerState:
        return self._state

    @property
    def version(self) -> int:
        return self._version

    @property
    def tick_seconds(self) -> float:
        return self._tick_seconds

    @property
    def resync_seconds(self) -> float:
        return self._resync_interval.total_seconds()

    @property
    def resync_in_flight(self) -> bool:
        return self._resync_task is not None and not self._resync_task.done()

    def apply(self, job: JobSnapshot, now: datetime | None = None) -> bool:
        """Adopt a server-confirmed job, e.g. the response of a transition.

        Returns False when ``job`` is older than the state already shown.
        """
        if job.id != self.job_id:
            raise ValueError(f"LiveClock for job {self.job_id} cannot apply job {job.id}")
        if job.version < self._version:
            self.stale_discarded += 1
            logger.debug(
                "Discarding stale state for job %s (version %s < %s)", job.id, job.version, self._version
            )
            return False
        self._state = job.timer_state
        self._version = job.version
        self._synced_at = self._now(now)
        return True

    def display_ms(self, now: datetime | None = None) -> int:
        return project(self._state, self._now(now))

    def display(self, now: datetime | None = None) -> str:
        return format_duration(self.display_ms(now))

    def needs_resync(self, now: datetime | None = None) -> bool:
        return self._now(now) - self._synced_at >= self._resync_interval

    async def resync(self) -> bool:
        try:
            job = await asyncio.to_thread(self._fetch_job)
        except Exception:
            self.resync_failures += 1
            logger.warning("Timer resync failed; keeping last known state", exc_info=True)
            # Back off a full interval before the next attempt.
            self._synced_at = self._now()
            return False
        return self.apply(job)

    def _schedule_resync(self) -> None:
        if self.resync_in_flight:
            return
        self._resync_task = asyncio.create_task(self.resync())

    async def run(self, on_tick: Callable[[str], None], stop_event: asyncio.Event | None = None) -> None:
        stop = stop_event or asyncio.Event()
        try:
            while not stop.is_set():
                on_tick(self.display())
                if self.needs_resync():
                    self._schedule_resync()
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self._tick_seconds)
                except asyncio.TimeoutError:
                    continue
        finally:
            if self._resync_task is not None and not self._resync_task.done():
                self._resync_task.cancel()
