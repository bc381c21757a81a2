from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class IdentityEventRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = Field(min_length=1, max_length=64)
    data: dict[str, Any]


class UserResponse(BaseModel):
    id: int
    external_id: str
    email: str | None
    name: str | None
    role: str
    created_at: datetime


class IdentityEventResponse(BaseModel):
    status: Literal["synced", "ignored"]
    user: UserResponse | None = None
