from __future__ import annotations

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from jobclock.db.models import JobStatus


def _normalize_status(value: object) -> object:
    if isinstance(value, str):
        return value.strip().lower()
    return value


StatusValue = Annotated[JobStatus, BeforeValidator(_normalize_status)]


class CreateJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    customer_name: str = Field(min_length=1, max_length=255)
    job_number: int | None = Field(default=None, ge=0)
    description: str | None = Field(default=None, max_length=4000)
    status: StatusValue | None = None


class UpdateJobRequest(BaseModel):
    """Composite edit: ``add_minutes``, then ``reset_total``, then ``status`` in one commit."""

    model_config = ConfigDict(extra="forbid")

    customer_name: str | None = Field(default=None, min_length=1, max_length=255)
    job_number: int | None = Field(default=None, ge=0)
    description: str | None = Field(default=None, max_length=4000)
    clear_description: bool = False
    add_minutes: float | None = Field(default=None, allow_inf_nan=False)
    reset_total: bool = False
    status: StatusValue | None = None


class SetStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: StatusValue


class ManualMinutesRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    minutes: float = Field(allow_inf_nan=False)


class AddEntryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    seconds: int


class DraftSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str = Field(min_length=1, max_length=64)
    seconds: int


class JobResponse(BaseModel):
    id: int
    user_id: int
    job_number: int | None
    customer_name: str
    description: str | None
    status: str
    accumulated_ms: int
    running_since: datetime | None
    stopped_at: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    items: list[JobResponse]
    next_cursor: int | None


class JobOptionResponse(BaseModel):
    id: int
    customer_name: str


class AdminJobResponse(JobResponse):
    owner_external_id: str
    owner_name: str | None
    owner_email: str | None


class AdminJobListResponse(BaseModel):
    items: list[AdminJobResponse]
    next_cursor: int | None


class TimeEntryResponse(BaseModel):
    id: int
    job_id: int
    user_id: int
    source: str
    started_at: datetime
    ended_at: datetime | None
    duration_ms: int | None
    draft_session_id: str | None


class ProjectionResponse(BaseModel):
    job: JobResponse
    display_ms: int
    display: str
    running: bool
    now: datetime
    resync_after_seconds: int


class SummaryResponse(BaseModel):
    generated_at: datetime
    total_jobs: int
    active_jobs: int
    running_jobs: int
    week_minutes: int
    week_display: str
    month_minutes: int
    month_display: str
    tracked_ms: int
    tracked_display: str
