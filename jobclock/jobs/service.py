from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from sqlalchemy import String, and_, cast, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from jobclock.core.config import Settings
from jobclock.core.duration import MS_PER_MINUTE
from jobclock.db.models import Job, JobStatus, TimeEntry, TimeEntrySource, User
from jobclock.jobs.types import (
    JobDetailsUpdate,
    JobOption,
    JobSnapshot,
    JobSummary,
    OwnedJobSnapshot,
    TimeEntrySnapshot,
)
from jobclock.timers.engine import InvalidDurationError, coerce_utc, elapsed_ms, reconcile_detailed
from jobclock.timers.projection import Projection, project, project_view
from jobclock.timers.types import JobTimerState, ManualAdjust, Reconciliation, TimerTransition

logger = logging.getLogger(__name__)

JOB_SORT_KEYS = {
    "created": "created_at",
    "customer_name": "customer_name",
    "status": "status",
}


class JobNotFoundError(RuntimeError):
    pass


class JobOwnershipError(RuntimeError):
    pass


class JobConflictError(RuntimeError):
    pass


class DraftAlreadyCommittedError(JobConflictError):
    pass


@dataclass(frozen=True)
class JobListResult:
    items: list[JobSnapshot]
    next_cursor: int | None


@dataclass(frozen=True)
class AdminJobListResult:
    items: list[OwnedJobSnapshot]
    next_cursor: int | None


class _LostRace(Exception):
    pass


class JobService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return coerce_utc(value)

    def _bounded_limit(self, limit: int | None) -> int:
        if limit is None:
            return self._settings.default_page_size
        return max(1, min(limit, self._settings.max_page_size))

    def _load_owned(self, session: Session, job_id: int, owner_id: int) -> Job:
        job = session.get(Job, job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if job.user_id != owner_id:
            raise JobOwnershipError(f"Job {job_id} is not owned by the caller")
        return job

    def create_job(
        self,
        owner_id: int,
        *,
        customer_name: str,
        job_number: int | None = None,
        description: str | None = None,
        status: JobStatus | None = None,
    ) -> JobSnapshot:
        normalized_name = customer_name.strip()
        if not normalized_name:
            raise ValueError("customer_name cannot be blank")
        initial_status = status or JobStatus(self._settings.default_job_status)

        with self._session_factory() as session:
            if session.get(User, owner_id) is None:
                raise JobNotFoundError(f"Owner not found: {owner_id}")
            job = Job(
                user_id=owner_id,
                job_number=job_number,
                customer_name=normalized_name,
                description=description,
                status=initial_status,
                accumulated_ms=0,
                running_since=None,
                version=0,
            )
            session.add(job)
            session.commit()
            session.refresh(job)
            logger.info("Created job %s for user %s", job.id, owner_id)
            return self._to_snapshot(job)

    def get_job(self, job_id: int, owner_id: int) -> JobSnapshot:
        with self._session_factory() as session:
            return self._to_snapshot(self._load_owned(session, job_id, owner_id))

    def get_projection(self, job_id: int, owner_id: int, now: datetime | None = None) -> tuple[JobSnapshot, Projection]:
        snapshot = self.get_job(job_id, owner_id)
        return snapshot, project_view(snapshot.timer_state, now or self._now())

    def list_jobs(
        self,
        owner_id: int,
        *,
        limit: int | None = None,
        cursor: int | None = None,
        query: str | None = None,
        status: JobStatus | None = None,
        sort: str = "created",
        direction: str = "desc",
    ) -> JobListResult:
        """Page through the caller's jobs.

        ``query`` matches customer name, description or job number
        case-insensitively. Pagination is keyset-based on ``(sort column, id)``,
        so ``cursor`` is the id of the last job on the previous page.
        """
        if sort not in JOB_SORT_KEYS:
            raise ValueError(f"sort must be one of {sorted(JOB_SORT_KEYS)}")
        if direction not in ("asc", "desc"):
            raise ValueError("direction must be 'asc' or 'desc'")
        sort_column = getattr(Job, JOB_SORT_KEYS[sort])
        descending = direction == "desc"
        bounded_limit = self._bounded_limit(limit)

        with self._session_factory() as session:
            stmt = select(Job).where(Job.user_id == owner_id)
            normalized_query = (query or "").strip()
            if normalized_query:
                stmt = stmt.where(
                    or_(
                        Job.customer_name.icontains(normalized_query, autoescape=True),
                        Job.description.icontains(normalized_query, autoescape=True),
                        cast(Job.job_number, String).contains(normalized_query, autoescape=True),
                    )
                )
            if status is not None:
                stmt = stmt.where(Job.status == status)

            if cursor is not None:
                anchor_exists = session.scalar(select(Job.id).where(Job.id == cursor, Job.user_id == owner_id))
                if anchor_exists is None:
                    raise ValueError(f"Invalid pagination cursor: {cursor}")
                anchor_value = select(sort_column).where(Job.id == cursor).scalar_subquery()
                if descending:
                    stmt = stmt.where(
                        or_(sort_column < anchor_value, and_(sort_column == anchor_value, Job.id < cursor))
                    )
                else:
                    stmt = stmt.where(
                        or_(sort_column > anchor_value, and_(sort_column == anchor_value, Job.id > cursor))
                    )

            if descending:
                stmt = stmt.order_by(sort_column.desc(), Job.id.desc())
            else:
                stmt = stmt.order_by(sort_column.asc(), Job.id.asc())
            rows = list(session.scalars(stmt.limit(bounded_limit + 1)).all())
            items = rows[:bounded_limit]
            next_cursor = items[-1].id if len(rows) > bounded_limit and items else None
            return JobListResult(items=[self._to_snapshot(row) for row in items], next_cursor=next_cursor)

    def list_job_options(self, owner_id: int) -> list[JobOption]:
        with self._session_factory() as session:
            rows = session.execute(
                select(Job.id, Job.customer_name).where(Job.user_id == owner_id).order_by(Job.customer_name.asc(), Job.id.asc())
            ).all()
            return [JobOption(id=row.id, customer_name=row.customer_name) for row in rows]

    def list_all_jobs(self, *, limit: int | None = None, cursor: int | None = None) -> AdminJobListResult:
        bounded_limit = self._bounded_limit(limit)
        with self._session_factory() as session:
            stmt = select(Job, User).join(User, User.id == Job.user_id).order_by(Job.id.desc()).limit(bounded_limit + 1)
            if cursor is not None:
                stmt = stmt.where(Job.id < cursor)
            rows = session.execute(stmt).all()
            items = [
                OwnedJobSnapshot(
                    job=self._to_snapshot(job),
                    owner_external_id=owner.external_id,
                    owner_name=owner.name,
                    owner_email=owner.email,
                )
                for job, owner in rows[:bounded_limit]
            ]
            next_cursor = items[-1].job.id if len(rows) > bounded_limit and items else None
            return AdminJobListResult(items=items, next_cursor=next_cursor)

    def update_job(
        self,
        job_id: int,
        owner_id: int,
        *,
        transitions: Sequence[TimerTransition] = (),
        details: JobDetailsUpdate | None = None,
        now: datetime | None = None,
    ) -> JobSnapshot:
        """Apply detail edits and a sequence of timer transitions as one atomic write.

        The engine is re-run on freshly read state whenever a concurrent writer
        bumps the row version first, so each elapsed interval is committed at
        most once.
        """
        attempts = self._settings.transition_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self._update_once(job_id, owner_id, transitions, details, now, draft_session_id=None)
            except _LostRace:
                logger.warning("Job %s changed concurrently (attempt %d/%d), retrying", job_id, attempt, attempts)
        raise JobConflictError(f"Job {job_id} was modified concurrently, giving up after {attempts} attempts")

    def apply_transition(
        self,
        job_id: int,
        owner_id: int,
        transition: TimerTransition,
        now: datetime | None = None,
    ) -> JobSnapshot:
        return self.update_job(job_id, owner_id, transitions=[transition], now=now)

    def apply_transitions(
        self,
        job_id: int,
        owner_id: int,
        transitions: Sequence[TimerTransition],
        now: datetime | None = None,
    ) -> JobSnapshot:
        return self.update_job(job_id, owner_id, transitions=transitions, now=now)

    def commit_draft_session(
        self,
        job_id: int,
        owner_id: int,
        *,
        session_id: str,
        seconds: int,
        now: datetime | None = None,
    ) -> JobSnapshot:
        normalized_session_id = session_id.strip()
        if not normalized_session_id:
            raise ValueError("session_id cannot be blank")
        if seconds <= 0:
            raise InvalidDurationError(f"Draft session must carry a positive duration, got {seconds} s")

        attempts = self._settings.transition_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                snapshot = self._update_once(
                    job_id,
                    owner_id,
                    [ManualAdjust(delta_ms=seconds * 1000)],
                    None,
                    now,
                    draft_session_id=normalized_session_id,
                )
            except _LostRace:
                logger.warning("Job %s changed concurrently (attempt %d/%d), retrying", job_id, attempt, attempts)
                continue
            logger.info("Committed draft session %s (%d s) to job %s", normalized_session_id, seconds, job_id)
            return snapshot
        raise JobConflictError(f"Job {job_id} was modified concurrently, giving up after {attempts} attempts")

    def _update_once(
        self,
        job_id: int,
        owner_id: int,
        transitions: Sequence[TimerTransition],
        details: JobDetailsUpdate | None,
        now: datetime | None,
        *,
        draft_session_id: str | None,
    ) -> JobSnapshot:
        effective_now = coerce_utc(now) if now is not None else self._now()
        with self._session_factory() as session:
            job = self._load_owned(session, job_id, owner_id)
            read_version = job.version

            if draft_session_id is not None:
                replayed = session.scalar(
                    select(TimeEntry.id).where(
                        TimeEntry.job_id == job_id,
                        TimeEntry.draft_session_id == draft_session_id,
                    )
                )
                if replayed is not None:
                    raise DraftAlreadyCommittedError(f"Draft session already committed: {draft_session_id}")

            state = JobTimerState(
                accumulated_ms=job.accumulated_ms,
                running_since=self._coerce_utc(job.running_since),
                status=job.status,
            )
            outcomes: list[Reconciliation] = []
            for transition in transitions:
                outcome = reconcile_detailed(state, transition, effective_now)
                outcomes.append(outcome)
                state = outcome.after

            values: dict[str, Any] = {
                "accumulated_ms": state.accumulated_ms,
                "running_since": state.running_since,
                "status": state.status,
                "version": read_version + 1,
                "updated_at": effective_now,
            }
            if any(outcome.stopped for outcome in outcomes):
                values["stopped_at"] = effective_now
            if any(outcome.started for outcome in outcomes) and state.is_running:
                values["stopped_at"] = None
            if details is not None:
                values.update(self._detail_values(details))

            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.version == read_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                raise _LostRace()

            try:
                if self._settings.record_time_entries or draft_session_id is not None:
                    self._record_entries(session, job_id, owner_id, outcomes, effective_now, draft_session_id)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                if draft_session_id is not None:
                    raise DraftAlreadyCommittedError(f"Draft session already committed: {draft_session_id}") from exc
                raise

            refreshed = session.get(Job, job_id, populate_existing=True)
            if refreshed is None:
                raise JobNotFoundError(f"Job disappeared after update: {job_id}")
            return self._to_snapshot(refreshed)

    def _detail_values(self, details: JobDetailsUpdate) -> dict[str, Any]:
        values: dict[str, Any] = {}
        if details.customer_name is not None:
            normalized_name = details.customer_name.strip()
            if not normalized_name:
                raise ValueError("customer_name cannot be blank")
            values["customer_name"] = normalized_name
        if details.job_number is not None:
            values["job_number"] = details.job_number
        if details.clear_description:
            values["description"] = None
        elif details.description is not None:
            values["description"] = details.description
        return values

    def _record_entries(
        self,
        session: Session,
        job_id: int,
        owner_id: int,
        outcomes: Sequence[Reconciliation],
        now: datetime,
        draft_session_id: str | None,
    ) -> None:
        for outcome in outcomes:
            if outcome.stopped:
                self._close_open_entries(session, job_id, owner_id, outcome, now)
            if outcome.started and outcome.after.running_since is not None:
                session.add(
                    TimeEntry(
                        job_id=job_id,
                        user_id=owner_id,
                        source=TimeEntrySource.TIMER,
                        started_at=outcome.after.running_since,
                        ended_at=None,
                    )
                )
            if isinstance(outcome.transition, ManualAdjust):
                delta_ms = int(outcome.transition.delta_ms)
                session.add(
                    TimeEntry(
                        job_id=job_id,
                        user_id=owner_id,
                        source=TimeEntrySource.DRAFT if draft_session_id is not None else TimeEntrySource.MANUAL,
                        started_at=now - timedelta(milliseconds=delta_ms),
                        ended_at=now,
                        duration_ms=delta_ms,
                        draft_session_id=draft_session_id,
                    )
                )
        session.flush()

    def _close_open_entries(
        self,
        session: Session,
        job_id: int,
        owner_id: int,
        outcome: Reconciliation,
        now: datetime,
    ) -> None:
        open_entries = list(
            session.scalars(
                select(TimeEntry)
                .where(
                    TimeEntry.job_id == job_id,
                    TimeEntry.source == TimeEntrySource.TIMER,
                    TimeEntry.ended_at.is_(None),
                )
                .order_by(TimeEntry.started_at.desc(), TimeEntry.id.desc())
            ).all()
        )
        if not open_entries:
            if outcome.before.running_since is None:
                raise RuntimeError(f"Job {job_id} stopped without a running instant")
            session.add(
                TimeEntry(
                    job_id=job_id,
                    user_id=owner_id,
                    source=TimeEntrySource.TIMER,
                    started_at=outcome.before.running_since,
                    ended_at=now,
                    duration_ms=outcome.committed_ms,
                )
            )
            return
        latest, *stale = open_entries
        latest.ended_at = now
        latest.duration_ms = outcome.committed_ms
        for entry in stale:
            entry.ended_at = now
            entry.duration_ms = 0

    def delete_job(self, job_id: int, owner_id: int) -> None:
        with self._session_factory() as session:
            job = self._load_owned(session, job_id, owner_id)
            session.execute(delete(TimeEntry).where(TimeEntry.job_id == job.id))
            session.delete(job)
            session.commit()
            logger.info("Deleted job %s", job_id)

    def list_entries(self, job_id: int, owner_id: int) -> list[TimeEntrySnapshot]:
        with self._session_factory() as session:
            self._load_owned(session, job_id, owner_id)
            rows = session.scalars(
                select(TimeEntry).where(TimeEntry.job_id == job_id).order_by(TimeEntry.started_at.asc(), TimeEntry.id.asc())
            ).all()
            return [self._to_entry_snapshot(row) for row in rows]

    def get_summary(self, owner_id: int, now: datetime | None = None) -> JobSummary:
        effective_now = coerce_utc(now) if now is not None else self._now()
        day_start = effective_now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = day_start - timedelta(days=(day_start.weekday() - self._settings.week_starts_on) % 7)
        month_start = day_start.replace(day=1)
        window_start = min(week_start, month_start)

        with self._session_factory() as session:
            jobs = list(session.scalars(select(Job).where(Job.user_id == owner_id)).all())
            entries = list(
                session.scalars(
                    select(TimeEntry).where(
                        TimeEntry.user_id == owner_id,
                        TimeEntry.started_at < effective_now,
                        or_(TimeEntry.ended_at.is_(None), TimeEntry.ended_at >= window_start),
                    )
                ).all()
            )

        week_ms = sum(self._entry_overlap_ms(entry, week_start, effective_now) for entry in entries)
        month_ms = sum(self._entry_overlap_ms(entry, month_start, effective_now) for entry in entries)
        tracked_ms = sum(
            project(
                JobTimerState(
                    accumulated_ms=job.accumulated_ms,
                    running_since=self._coerce_utc(job.running_since),
                    status=job.status,
                ),
                effective_now,
            )
            for job in jobs
        )
        return JobSummary(
            generated_at=effective_now,
            total_jobs=len(jobs),
            active_jobs=sum(1 for job in jobs if job.status == JobStatus.ACTIVE),
            running_jobs=sum(1 for job in jobs if job.running_since is not None),
            week_minutes=week_ms // MS_PER_MINUTE,
            month_minutes=month_ms // MS_PER_MINUTE,
            tracked_ms=tracked_ms,
        )

    def _entry_overlap_ms(self, entry: TimeEntry, range_start: datetime, range_end: datetime) -> int:
        started_at = coerce_utc(entry.started_at)
        ended_at = self._coerce_utc(entry.ended_at) or range_end
        clipped_start = max(started_at, range_start)
        clipped_end = min(ended_at, range_end)
        overlap = elapsed_ms(clipped_start, clipped_end)
        if entry.ended_at is not None and entry.duration_ms is not None:
            # Reset discards live time: a closed entry never counts more than it committed.
            return min(overlap, entry.duration_ms)
        return overlap

    def _to_snapshot(self, job: Job) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            user_id=job.user_id,
            job_number=job.job_number,
            customer_name=job.customer_name,
            description=job.description,
            status=job.status,
            accumulated_ms=job.accumulated_ms,
            running_since=self._coerce_utc(job.running_since),
            stopped_at=self._coerce_utc(job.stopped_at),
            version=job.version,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    def _to_entry_snapshot(self, entry: TimeEntry) -> TimeEntrySnapshot:
        return TimeEntrySnapshot(
            id=entry.id,
            job_id=entry.job_id,
            user_id=entry.user_id,
            source=entry.source,
            started_at=coerce_utc(entry.started_at),
            ended_at=self._coerce_utc(entry.ended_at),
            duration_ms=entry.duration_ms,
            draft_session_id=entry.draft_session_id,
        )


def snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "user_id": snapshot.user_id,
        "job_number": snapshot.job_number,
        "customer_name": snapshot.customer_name,
        "description": snapshot.description,
        "status": snapshot.status.value,
        "accumulated_ms": snapshot.accumulated_ms,
        "running_since": snapshot.running_since,
        "stopped_at": snapshot.stopped_at,
        "version": snapshot.version,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
    }
