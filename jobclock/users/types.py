from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from jobclock.db.models import UserRole


@dataclass(slots=True)
class UserSnapshot:
    id: int
    external_id: str
    email: str | None
    name: str | None
    role: UserRole
    created_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
