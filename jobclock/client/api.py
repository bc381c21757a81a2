"""HTTP client for the JobClock API.

Responses are parsed through the same pydantic schemas the server uses, so a
client sees exactly the :class:`JobSnapshot` the service committed.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from jobclock.api.schemas.jobs import (
    AdminJobListResponse,
    JobOptionResponse,
    JobResponse,
    ProjectionResponse,
    SummaryResponse,
    TimeEntryResponse,
)
from jobclock.client.live import LiveClock
from jobclock.core.config import Settings
from jobclock.db.models import JobStatus
from jobclock.drafts.store import DraftSnapshotStore
from jobclock.drafts.timer import DraftTimer
from jobclock.jobs.service import DraftAlreadyCommittedError
from jobclock.jobs.types import JobSnapshot
from jobclock.timers.types import JobTimerState

logger = logging.getLogger(__name__)

DRAFT_ALREADY_COMMITTED_CODE = "draft_already_committed"


class ApiError(RuntimeError):
    def __init__(self, status_code: int, detail: Any):
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class ApiNotFoundError(ApiError):
    pass


class ApiForbiddenError(ApiError):
    pass


class ApiConflictError(ApiError):
    pass


class ApiValidationError(ApiError):
    pass


class ApiDraftAlreadyCommittedError(ApiConflictError, DraftAlreadyCommittedError):
    pass


def _job_from_response(response: JobResponse) -> JobSnapshot:
    return JobSnapshot(
        id=response.id,
        user_id=response.user_id,
        job_number=response.job_number,
        customer_name=response.customer_name,
        description=response.description,
        status=JobStatus(response.status),
        accumulated_ms=response.accumulated_ms,
        running_since=response.running_since,
        stopped_at=response.stopped_at,
        version=response.version,
        created_at=response.created_at,
        updated_at=response.updated_at,
    )


class JobClockClient:
    def __init__(
        self,
        http_client: httpx.Client,
        external_id: str,
        *,
        identity_header: str = "X-User-Id",
        api_prefix: str = "/api/v1",
    ):
        self._http = http_client
        self._headers = {identity_header: external_id}
        self._prefix = api_prefix.rstrip("/")

    @classmethod
    def connect(cls, base_url: str, external_id: str, *, timeout: float = 10.0, **kwargs: Any) -> "JobClockClient":
        return cls(httpx.Client(base_url=base_url, timeout=timeout), external_id, **kwargs)

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, *, json: Any = None, params: dict[str, Any] | None = None) -> Any:
        response = self._http.request(
            method,
            f"{self._prefix}{path}",
            json=json,
            params={key: value for key, value in (params or {}).items() if value is not None},
            headers=self._headers,
        )
        if response.status_code >= 400:
            self._raise_for_status(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _raise_for_status(self, response: httpx.Response) -> None:
        try:
            payload = response.json()
        except ValueError:
            payload = response.text
        detail = payload.get("detail") if isinstance(payload, dict) else payload
        logger.debug("API error %s %s: %s", response.request.method, response.request.url, detail)
        code = response.status_code
        if code == 404:
            raise ApiNotFoundError(code, detail)
        if code in (401, 403):
            raise ApiForbiddenError(code, detail)
        if code == 409:
            if response.headers.get("X-Error-Code") == DRAFT_ALREADY_COMMITTED_CODE:
                raise ApiDraftAlreadyCommittedError(code, detail)
            raise ApiConflictError(code, detail)
        if code == 422:
            raise ApiValidationError(code, detail)
        raise ApiError(code, detail)

    def _job(self, method: str, path: str, *, json: Any = None) -> JobSnapshot:
        return _job_from_response(JobResponse.model_validate(self._request(method, path, json=json)))

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/health")

    def create_job(
        self,
        customer_name: str,
        *,
        job_number: int | None = None,
        description: str | None = None,
        status: JobStatus | str | None = None,
    ) -> JobSnapshot:
        payload: dict[str, Any] = {"customer_name": customer_name, "job_number": job_number, "description": description}
        if status is not None:
            payload["status"] = JobStatus(status).value
        return self._job("POST", "/jobs", json=payload)

    def get_job(self, job_id: int) -> JobSnapshot:
        return self._job("GET", f"/jobs/{job_id}")

    def get_state(self, job_id: int) -> JobTimerState:
        return self.get_job(job_id).timer_state

    def list_jobs(
        self,
        *,
        limit: int | None = None,
        cursor: int | None = None,
        query: str | None = None,
        status: JobStatus | str | None = None,
        sort: str | None = None,
        direction: str | None = None,
    ) -> tuple[list[JobSnapshot], int | None]:
        if isinstance(status, JobStatus):
            status = status.value
        payload = self._request(
            "GET",
            "/jobs",
            params={"limit": limit, "cursor": cursor, "q": query, "status": status, "sort": sort, "direction": direction},
        )
        items = [_job_from_response(JobResponse.model_validate(item)) for item in payload["items"]]
        return items, payload["next_cursor"]

    def list_job_options(self) -> list[JobOptionResponse]:
        return [JobOptionResponse.model_validate(item) for item in self._request("GET", "/jobs/options")]

    def update_job(self, job_id: int, **changes: Any) -> JobSnapshot:
        if isinstance(changes.get("status"), JobStatus):
            changes["status"] = changes["status"].value
        return self._job("PATCH", f"/jobs/{job_id}", json=changes)

    def delete_job(self, job_id: int) -> None:
        self._request("DELETE", f"/jobs/{job_id}")

    def start(self, job_id: int) -> JobSnapshot:
        return self._job("POST", f"/jobs/{job_id}/start")

    def pause(self, job_id: int) -> JobSnapshot:
        return self._job("POST", f"/jobs/{job_id}/pause")

    def stop(self, job_id: int) -> JobSnapshot:
        return self._job("POST", f"/jobs/{job_id}/stop")

    def set_status(self, job_id: int, status: JobStatus | str) -> JobSnapshot:
        return self._job("POST", f"/jobs/{job_id}/status", json={"status": JobStatus(status).value})

    def reset_total(self, job_id: int) -> JobSnapshot:
        return self._job("POST", f"/jobs/{job_id}/reset")

    def add_minutes(self, job_id: int, minutes: float) -> JobSnapshot:
        return self._job("POST", f"/jobs/{job_id}/manual", json={"minutes": minutes})

    def add_seconds(self, job_id: int, seconds: int) -> JobSnapshot:
        return self._job("POST", f"/jobs/{job_id}/entries", json={"seconds": seconds})

    def list_entries(self, job_id: int) -> list[TimeEntryResponse]:
        return [TimeEntryResponse.model_validate(item) for item in self._request("GET", f"/jobs/{job_id}/entries")]

    def commit_draft_session(self, job_id: int, session_id: str, seconds: int) -> JobTimerState:
        """Commit a local draft session; matches the draft timer's committer signature."""
        job = self._job("POST", f"/jobs/{job_id}/session", json={"session_id": session_id, "seconds": seconds})
        return job.timer_state

    def live_clock(self, job_id: int, settings: Settings | None = None) -> LiveClock:
        """Build a ``LiveClock`` for ``job_id`` that resyncs through this client."""
        return LiveClock.from_settings(self.get_job(job_id), lambda: self.get_job(job_id), settings)

    def draft_timer(self, job_id: int, store: DraftSnapshotStore | None = None) -> DraftTimer:
        """Build a ``DraftTimer`` whose saves commit through this client."""
        return DraftTimer(job_id, store or DraftSnapshotStore.from_settings(), self.commit_draft_session)

    def get_projection(self, job_id: int) -> ProjectionResponse:
        return ProjectionResponse.model_validate(self._request("GET", f"/jobs/{job_id}/projection"))

    def get_summary(self) -> SummaryResponse:
        return SummaryResponse.model_validate(self._request("GET", "/jobs/summary"))

    def list_all_jobs(self, *, limit: int | None = None, cursor: int | None = None) -> AdminJobListResponse:
        return AdminJobListResponse.model_validate(self._request("GET", "/admin/jobs", params={"limit": limit, "cursor": cursor}))
