from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from jobclock.api.dependencies import get_user_service
from jobclock.api.schemas.users import IdentityEventRequest, IdentityEventResponse, UserResponse
from jobclock.core.config import get_settings
from jobclock.users.service import UserService
from jobclock.users.types import UserSnapshot
from jobclock.users.webhooks import SYNCED_EVENT_TYPES, WebhookSignatureError, profile_from_event, verify_signature

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def user_response(user: UserSnapshot) -> UserResponse:
    return UserResponse(
        id=user.id,
        external_id=user.external_id,
        email=user.email,
        name=user.name,
        role=user.role.value,
        created_at=user.created_at,
    )


@router.post("/identity", response_model=IdentityEventResponse)
async def receive_identity_event(
    request: Request,
    users: UserService = Depends(get_user_service),
) -> IdentityEventResponse:
    settings = get_settings()
    if settings.identity_webhook_secret is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Identity webhook is not configured")

    body = await request.body()
    try:
        verify_signature(
            settings.identity_webhook_secret.get_secret_value(),
            request.headers.get("X-Webhook-Timestamp"),
            request.headers.get("X-Webhook-Signature"),
            body,
            tolerance_seconds=settings.identity_webhook_tolerance_seconds,
        )
    except WebhookSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    try:
        event = IdentityEventRequest.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc

    if event.type not in SYNCED_EVENT_TYPES:
        return IdentityEventResponse(status="ignored")

    try:
        profile = profile_from_event(event.data)
        user = await run_in_threadpool(
            users.sync_identity, profile.external_id, email=profile.email, name=profile.name
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return IdentityEventResponse(status="synced", user=user_response(user))
