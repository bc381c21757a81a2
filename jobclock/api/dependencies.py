from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from jobclock.core.config import get_settings
from jobclock.db.session import get_session_factory
from jobclock.jobs.service import JobService
from jobclock.users.service import UserNotFoundError, UserService
from jobclock.users.types import UserSnapshot


def get_job_service() -> JobService:
    return JobService(settings=get_settings(), session_factory=get_session_factory())


def get_user_service() -> UserService:
    return UserService(settings=get_settings(), session_factory=get_session_factory())


def get_current_user(request: Request, users: UserService = Depends(get_user_service)) -> UserSnapshot:
    """Resolve the caller from the identity header set by the upstream identity provider."""
    settings = get_settings()
    header_name = settings.identity_header
    external_id = (request.headers.get(header_name) or "").strip()
    if not external_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Missing {header_name} header")
    try:
        return users.resolve(
            external_id,
            email=request.headers.get(settings.identity_email_header),
            name=request.headers.get(settings.identity_name_header),
        )
    except UserNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
