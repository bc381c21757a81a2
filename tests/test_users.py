from __future__ import annotations

import os
from pathlib import Path

import pytest

import jobclock.db.session as db_session_module
from jobclock.core.config import get_settings
from jobclock.db.init_db import initialize_database
from jobclock.db.models import UserRole
from jobclock.users.service import AdminRequiredError, UserNotFoundError, UserService


def setup_env(tmp_path: Path, auto_provision: bool = True) -> UserService:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["JOBCLOCK_STATE_ROOT"] = state_root.as_posix()
    os.environ["JOBCLOCK_AUTO_PROVISION_USERS"] = "true" if auto_provision else "false"

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    return UserService(get_settings(), db_session_module.get_session_factory())


def test_ensure_user_upserts_profile_fields(tmp_path: Path) -> None:
    users = setup_env(tmp_path)

    created = users.ensure_user(" auth0|alice ", email="alice@example.com")
    updated = users.ensure_user("auth0|alice", name="Alice", role=UserRole.ADMIN)

    assert created.id == updated.id
    assert updated.external_id == "auth0|alice"
    assert updated.email == "alice@example.com"
    assert updated.name == "Alice"
    assert users.require_admin(updated) is updated


def test_resolve_respects_auto_provisioning(tmp_path: Path) -> None:
    users = setup_env(tmp_path, auto_provision=False)

    with pytest.raises(UserNotFoundError):
        users.resolve("auth0|stranger")
    with pytest.raises(ValueError):
        users.ensure_user("   ")

    users.ensure_user("auth0|known")
    assert users.resolve("auth0|known").role == UserRole.USER


def test_require_admin_rejects_regular_users(tmp_path: Path) -> None:
    users = setup_env(tmp_path)
    regular = users.resolve("auth0|bob")

    with pytest.raises(AdminRequiredError):
        users.require_admin(regular)


def test_resolve_refreshes_forwarded_profile_fields(tmp_path: Path) -> None:
    users = setup_env(tmp_path)

    first = users.resolve("auth0|alice", email=" alice@example.com ", name="Alice")
    again = users.resolve("auth0|alice", email="", name=None)

    assert first.email == "alice@example.com"
    assert again.id == first.id
    assert again.email == "alice@example.com"
    assert again.name == "Alice"


def test_sync_identity_creates_updates_and_relinks_by_email(tmp_path: Path) -> None:
    users = setup_env(tmp_path)

    created = users.sync_identity("user_1", email="dana@example.com", name="Dana")
    assert created.role == UserRole.USER

    updated = users.sync_identity("user_1", email="dana@work.example", name=None)
    assert updated.id == created.id
    assert updated.email == "dana@work.example"
    assert updated.name == "Dana"

    legacy = users.ensure_user("legacy|42", email="Eve@Example.com", role=UserRole.ADMIN)
    relinked = users.sync_identity("user_2", email="eve@example.com", name="Eve Smith")
    assert relinked.id == legacy.id
    assert relinked.external_id == "user_2"
    assert relinked.role == UserRole.ADMIN
    with pytest.raises(UserNotFoundError):
        users.get_by_external_id("legacy|42")

    anonymous = users.sync_identity("user_3")
    assert anonymous.email is None
    assert anonymous.id not in {created.id, legacy.id}
