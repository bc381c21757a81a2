from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from jobclock.api.dependencies import get_current_user, get_job_service
from jobclock.api.schemas.jobs import (
    AddEntryRequest,
    CreateJobRequest,
    DraftSessionRequest,
    JobListResponse,
    JobOptionResponse,
    JobResponse,
    ManualMinutesRequest,
    ProjectionResponse,
    SetStatusRequest,
    SummaryResponse,
    TimeEntryResponse,
    UpdateJobRequest,
)
from jobclock.core.config import get_settings
from jobclock.core.duration import format_duration, format_minutes, minutes_to_ms, seconds_to_ms
from jobclock.db.models import JobStatus
from jobclock.jobs.service import (
    DraftAlreadyCommittedError,
    JobConflictError,
    JobNotFoundError,
    JobOwnershipError,
    JobService,
    snapshot_to_dict,
)
from jobclock.jobs.types import JobDetailsUpdate, JobSnapshot, TimeEntrySnapshot
from jobclock.timers.engine import InvalidDurationError
from jobclock.timers.types import ManualAdjust, PauseOrStop, ResetTotal, SetStatus, Start, TimerTransition
from jobclock.users.types import UserSnapshot

router = APIRouter(prefix="/jobs", tags=["jobs"])

DRAFT_ALREADY_COMMITTED_CODE = "draft_already_committed"


@contextmanager
def _service_errors() -> Iterator[None]:
    try:
        yield
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobOwnershipError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except DraftAlreadyCommittedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
            headers={"X-Error-Code": DRAFT_ALREADY_COMMITTED_CODE},
        ) from exc
    except JobConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (InvalidDurationError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


def _job_response(snapshot: JobSnapshot) -> JobResponse:
    return JobResponse.model_validate(snapshot_to_dict(snapshot))


def _entry_response(entry: TimeEntrySnapshot) -> TimeEntryResponse:
    return TimeEntryResponse(
        id=entry.id,
        job_id=entry.job_id,
        user_id=entry.user_id,
        source=entry.source.value,
        started_at=entry.started_at,
        ended_at=entry.ended_at,
        duration_ms=entry.duration_ms,
        draft_session_id=entry.draft_session_id,
    )


def _transition(service: JobService, job_id: int, user: UserSnapshot, transition: TimerTransition) -> JobResponse:
    with _service_errors():
        job = service.apply_transition(job_id, user.id, transition)
    return _job_response(job)


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def create_job(
    request: CreateJobRequest,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    with _service_errors():
        job = service.create_job(
            user.id,
            customer_name=request.customer_name,
            job_number=request.job_number,
            description=request.description,
            status=request.status,
        )
    return _job_response(job)


@router.get("", response_model=JobListResponse)
def list_jobs(
    limit: int | None = Query(default=None, ge=1),
    cursor: int | None = None,
    q: str | None = Query(default=None, max_length=200),
    status_filter: str | None = Query(default=None, alias="status"),
    sort: Literal["created", "customer_name", "status"] = "created",
    direction: Literal["asc", "desc"] = "desc",
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobListResponse:
    with _service_errors():
        job_status = _parse_status_filter(status_filter)
        result = service.list_jobs(
            user.id,
            limit=limit,
            cursor=cursor,
            query=q,
            status=job_status,
            sort=sort,
            direction=direction,
        )
    return JobListResponse(items=[_job_response(item) for item in result.items], next_cursor=result.next_cursor)


def _parse_status_filter(raw: str | None) -> JobStatus | None:
    if raw is None:
        return None
    normalized = raw.strip().lower()
    if normalized in ("", "all"):
        return None
    return JobStatus(normalized)


@router.get("/options", response_model=list[JobOptionResponse])
def list_job_options(
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> list[JobOptionResponse]:
    return [JobOptionResponse(id=option.id, customer_name=option.customer_name) for option in service.list_job_options(user.id)]


@router.get("/summary", response_model=SummaryResponse)
def get_summary(
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> SummaryResponse:
    summary = service.get_summary(user.id)
    return SummaryResponse(
        generated_at=summary.generated_at,
        total_jobs=summary.total_jobs,
        active_jobs=summary.active_jobs,
        running_jobs=summary.running_jobs,
        week_minutes=summary.week_minutes,
        week_display=format_minutes(summary.week_minutes),
        month_minutes=summary.month_minutes,
        month_display=format_minutes(summary.month_minutes),
        tracked_ms=summary.tracked_ms,
        tracked_display=format_duration(summary.tracked_ms),
    )


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: int,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    with _service_errors():
        job = service.get_job(job_id, user.id)
    return _job_response(job)


@router.patch("/{job_id}", response_model=JobResponse)
def update_job(
    job_id: int,
    request: UpdateJobRequest,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    transitions: list[TimerTransition] = []
    if request.add_minutes is not None:
        transitions.append(ManualAdjust(delta_ms=minutes_to_ms(request.add_minutes)))
    if request.reset_total:
        transitions.append(ResetTotal())
    if request.status is not None:
        transitions.append(SetStatus(status=request.status))
    details = JobDetailsUpdate(
        customer_name=request.customer_name,
        job_number=request.job_number,
        description=request.description,
        clear_description=request.clear_description,
    )
    with _service_errors():
        job = service.update_job(job_id, user.id, transitions=transitions, details=details)
    return _job_response(job)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_job(
    job_id: int,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> Response:
    with _service_errors():
        service.delete_job(job_id, user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{job_id}/start", response_model=JobResponse)
def start_job(
    job_id: int,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    return _transition(service, job_id, user, Start())


@router.post("/{job_id}/pause", response_model=JobResponse)
def pause_job(
    job_id: int,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    return _transition(service, job_id, user, PauseOrStop())


@router.post("/{job_id}/stop", response_model=JobResponse)
def stop_job(
    job_id: int,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    return _transition(service, job_id, user, PauseOrStop())


@router.post("/{job_id}/status", response_model=JobResponse)
def set_job_status(
    job_id: int,
    request: SetStatusRequest,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    return _transition(service, job_id, user, SetStatus(status=request.status))


@router.post("/{job_id}/reset", response_model=JobResponse)
def reset_job_total(
    job_id: int,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    return _transition(service, job_id, user, ResetTotal())


@router.post("/{job_id}/manual", response_model=JobResponse)
def add_manual_minutes(
    job_id: int,
    request: ManualMinutesRequest,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    return _transition(service, job_id, user, ManualAdjust(delta_ms=minutes_to_ms(request.minutes)))


@router.get("/{job_id}/entries", response_model=list[TimeEntryResponse])
def list_job_entries(
    job_id: int,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> list[TimeEntryResponse]:
    with _service_errors():
        entries = service.list_entries(job_id, user.id)
    return [_entry_response(entry) for entry in entries]


@router.post("/{job_id}/entries", response_model=JobResponse)
def add_job_entry(
    job_id: int,
    request: AddEntryRequest,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    return _transition(service, job_id, user, ManualAdjust(delta_ms=seconds_to_ms(request.seconds)))


@router.post("/{job_id}/session", response_model=JobResponse)
def commit_draft_session(
    job_id: int,
    request: DraftSessionRequest,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    with _service_errors():
        job = service.commit_draft_session(job_id, user.id, session_id=request.session_id, seconds=request.seconds)
    return _job_response(job)


@router.get("/{job_id}/projection", response_model=ProjectionResponse)
def get_job_projection(
    job_id: int,
    user: UserSnapshot = Depends(get_current_user),
    service: JobService = Depends(get_job_service),
) -> ProjectionResponse:
    with _service_errors():
        job, projection = service.get_projection(job_id, user.id)
    return ProjectionResponse(
        job=_job_response(job),
        display_ms=projection.display_ms,
        display=projection.display,
        running=projection.running,
        now=projection.computed_at,
        resync_after_seconds=get_settings().resync_interval_seconds,
    )
