from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from jobclock.api.dependencies import get_current_user, get_job_service, get_user_service
from jobclock.api.schemas.jobs import AdminJobListResponse, AdminJobResponse
from jobclock.jobs.service import JobService, snapshot_to_dict
from jobclock.users.service import AdminRequiredError, UserService
from jobclock.users.types import UserSnapshot

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/jobs", response_model=AdminJobListResponse)
def list_all_jobs(
    limit: int | None = Query(default=None, ge=1),
    cursor: int | None = None,
    user: UserSnapshot = Depends(get_current_user),
    users: UserService = Depends(get_user_service),
    service: JobService = Depends(get_job_service),
) -> AdminJobListResponse:
    try:
        users.require_admin(user)
    except AdminRequiredError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    result = service.list_all_jobs(limit=limit, cursor=cursor)
    return AdminJobListResponse(
        items=[
            AdminJobResponse.model_validate(
                {
                    **snapshot_to_dict(item.job),
                    "owner_external_id": item.owner_external_id,
                    "owner_name": item.owner_name,
                    "owner_email": item.owner_email,
                }
            )
            for item in result.items
        ],
        next_cursor=result.next_cursor,
    )
