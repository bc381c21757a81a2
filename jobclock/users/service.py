from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from jobclock.core.config import Settings
from jobclock.db.models import User, UserRole
from jobclock.users.types import UserSnapshot

logger = logging.getLogger(__name__)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class UserNotFoundError(RuntimeError):
    pass


class AdminRequiredError(RuntimeError):
    pass


class UserService:
    """Local mirror of identities issued by the external identity provider."""

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _normalize_external_id(self, external_id: str) -> str:
        normalized = external_id.strip()
        if not normalized:
            raise ValueError("external_id cannot be blank")
        return normalized

    def get_by_external_id(self, external_id: str) -> UserSnapshot:
        normalized = self._normalize_external_id(external_id)
        with self._session_factory() as session:
            user = session.scalar(select(User).where(User.external_id == normalized))
            if user is None:
                raise UserNotFoundError(f"User not found: {normalized}")
            return self._to_snapshot(user)

    def ensure_user(
        self,
        external_id: str,
        *,
        email: str | None = None,
        name: str | None = None,
        role: UserRole | None = None,
    ) -> UserSnapshot:
        normalized = self._normalize_external_id(external_id)
        with self._session_factory() as session:
            user = session.scalar(select(User).where(User.external_id == normalized))
            if user is None:
                user = User(external_id=normalized, email=email, name=name, role=role or UserRole.USER)
                session.add(user)
                try:
                    session.commit()
                except IntegrityError:
                    # Another request provisioned the same subject first.
                    session.rollback()
                    user = session.scalar(select(User).where(User.external_id == normalized))
                    if user is None:
                        raise
                else:
                    logger.info("Provisioned user %s", normalized)
                    session.refresh(user)
                    return self._to_snapshot(user)

            changed = False
            if email is not None and user.email != email:
                user.email = email
                changed = True
            if name is not None and user.name != name:
                user.name = name
                changed = True
            if role is not None and user.role != role:
                user.role = role
                changed = True
            if changed:
                session.commit()
                session.refresh(user)
            return self._to_snapshot(user)

    def sync_identity(self, external_id: str, *, email: str | None = None, name: str | None = None) -> UserSnapshot:
        """Mirror a profile pushed by the identity provider.

        The subject is matched by external id first. Failing that, a user
        already holding the same email is relinked to the new subject, so a
        re-created account keeps its jobs. Otherwise a new user is created.
        """
        normalized = self._normalize_external_id(external_id)
        email = _clean(email)
        name = _clean(name)
        with self._session_factory() as session:
            user = session.scalar(select(User).where(User.external_id == normalized))
            if user is None and email is not None:
                user = session.scalar(
                    select(User).where(func.lower(User.email) == email.lower()).order_by(User.id.asc()).limit(1)
                )
                if user is not None:
                    logger.info("Linking user %s (%s) to subject %s", user.id, user.external_id, normalized)
                    user.external_id = normalized
            if user is None:
                user = User(external_id=normalized, email=email, name=name, role=UserRole.USER)
                session.add(user)
            else:
                if email is not None:
                    user.email = email
                if name is not None:
                    user.name = name
            try:
                session.commit()
            except IntegrityError:
                # A request for the same subject provisioned it concurrently.
                session.rollback()
                return self.ensure_user(normalized, email=email, name=name)
            session.refresh(user)
            logger.info("Synced identity %s", normalized)
            return self._to_snapshot(user)

    def resolve(self, external_id: str, *, email: str | None = None, name: str | None = None) -> UserSnapshot:
        """Find the caller, refreshing the profile fields the proxy forwarded."""
        if not self._settings.auto_provision_users:
            self.get_by_external_id(external_id)
        return self.ensure_user(external_id, email=_clean(email), name=_clean(name))

    def require_admin(self, user: UserSnapshot) -> UserSnapshot:
        if not user.is_admin:
            raise AdminRequiredError("Admin access required")
        return user

    def _to_snapshot(self, user: User) -> UserSnapshot:
        return UserSnapshot(
            id=user.id,
            external_id=user.external_id,
            email=user.email,
            name=user.name,
            role=user.role,
            created_at=user.created_at,
        )
