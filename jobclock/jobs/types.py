from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from jobclock.db.models import JobStatus, TimeEntrySource
from jobclock.timers.types import JobTimerState


@dataclass(slots=True)
class JobSnapshot:
    id: int
    user_id: int
    job_number: int | None
    customer_name: str
    description: str | None
    status: JobStatus
    accumulated_ms: int
    running_since: datetime | None
    stopped_at: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime

    @property
    def timer_state(self) -> JobTimerState:
        return JobTimerState(
            accumulated_ms=self.accumulated_ms,
            running_since=self.running_since,
            status=self.status,
        )


@dataclass(slots=True)
class OwnedJobSnapshot:
    job: JobSnapshot
    owner_external_id: str
    owner_name: str | None
    owner_email: str | None


@dataclass(slots=True)
class TimeEntrySnapshot:
    id: int
    job_id: int
    user_id: int
    source: TimeEntrySource
    started_at: datetime
    ended_at: datetime | None
    duration_ms: int | None
    draft_session_id: str | None


@dataclass(frozen=True, slots=True)
class JobOption:
    id: int
    customer_name: str


@dataclass(frozen=True, slots=True)
class JobDetailsUpdate:
    customer_name: str | None = None
    job_number: int | None = None
    description: str | None = None
    clear_description: bool = False


@dataclass(slots=True)
class JobSummary:
    generated_at: datetime
    total_jobs: int
    active_jobs: int
    running_jobs: int
    week_minutes: int
    month_minutes: int
    tracked_ms: int
