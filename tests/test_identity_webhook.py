from __future__ import annotations

import json
import os
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import jobclock.db.session as db_session_module
from jobclock.__main__ import main
from jobclock.api.app import create_app
from jobclock.core.config import get_settings
from jobclock.db.init_db import initialize_database
from jobclock.db.models import UserRole
from jobclock.users.service import UserNotFoundError, UserService
from jobclock.users.webhooks import WebhookSignatureError, profile_from_event, sign_payload, verify_signature

SECRET = "whsec_test"


def _prepare_env(tmp_path: Path, secret: str | None = SECRET) -> TestClient:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["JOBCLOCK_STATE_ROOT"] = state_root.as_posix()
    os.environ["JOBCLOCK_AUTO_PROVISION_USERS"] = "true"
    if secret is None:
        os.environ.pop("JOBCLOCK_IDENTITY_WEBHOOK_SECRET", None)
    else:
        os.environ["JOBCLOCK_IDENTITY_WEBHOOK_SECRET"] = secret

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    return TestClient(create_app())


def _users() -> UserService:
    return UserService(get_settings(), db_session_module.get_session_factory())


def _post_event(client: TestClient, event: dict, *, secret: str = SECRET, timestamp: str | None = None):
    body = json.dumps(event).encode("utf-8")
    timestamp = timestamp or str(int(time.time()))
    return client.post(
        "/api/v1/webhooks/identity",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Webhook-Timestamp": timestamp,
            "X-Webhook-Signature": sign_payload(secret, timestamp, body),
        },
    )


def _user_event(event_type: str = "user.created", **data: object) -> dict:
    payload = {
        "id": "user_2abc",
        "first_name": "Dana",
        "last_name": "Reyes",
        "primary_email_address_id": "idn_2",
        "email_addresses": [
            {"id": "idn_1", "email_address": "old@example.com"},
            {"id": "idn_2", "email_address": "dana@example.com"},
        ],
    }
    payload.update(data)
    return {"type": event_type, "object": "event", "data": payload}


@pytest.fixture(autouse=True)
def _clear_webhook_secret():
    yield
    os.environ.pop("JOBCLOCK_IDENTITY_WEBHOOK_SECRET", None)
    get_settings.cache_clear()


def test_user_created_event_mirrors_profile(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)

    response = _post_event(client, _user_event())
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "synced"
    assert body["user"]["email"] == "dana@example.com"
    assert body["user"]["name"] == "Dana Reyes"

    stored = _users().get_by_external_id("user_2abc")
    assert stored.email == "dana@example.com"
    assert stored.name == "Dana Reyes"


def test_user_updated_event_relinks_existing_email_and_keeps_jobs(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)
    legacy = _users().ensure_user("legacy|7", email="dana@example.com")
    created = client.post("/api/v1/jobs", json={"customer_name": "Acme"}, headers={"X-User-Id": "legacy|7"})
    assert created.status_code == 201

    response = _post_event(client, _user_event("user.updated", first_name=None, last_name=None, username="dreyes"))
    assert response.status_code == 200, response.text
    assert response.json()["user"]["id"] == legacy.id
    assert response.json()["user"]["name"] == "dreyes"

    jobs = client.get("/api/v1/jobs", headers={"X-User-Id": "user_2abc"}).json()["items"]
    assert [job["customer_name"] for job in jobs] == ["Acme"]


def test_unhandled_event_types_are_ignored(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)

    response = _post_event(client, {"type": "session.created", "data": {"id": "sess_1"}})

    assert response.status_code == 200
    assert response.json() == {"status": "ignored", "user": None}


def test_webhook_rejects_bad_signatures(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)

    assert _post_event(client, _user_event(), secret="wrong").status_code == 401
    assert _post_event(client, _user_event(), timestamp=str(int(time.time()) - 3600)).status_code == 401
    unsigned = client.post("/api/v1/webhooks/identity", json=_user_event())
    assert unsigned.status_code == 401
    with pytest.raises(UserNotFoundError):
        _users().get_by_external_id("user_2abc")


def test_webhook_validates_payload(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)

    assert _post_event(client, {"type": "user.created"}).status_code == 422
    assert _post_event(client, _user_event(id="  ")).status_code == 422


def test_webhook_is_disabled_without_a_secret(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path, secret=None)

    assert _post_event(client, _user_event()).status_code == 404


def test_identity_headers_fill_profile_for_admin_listing(tmp_path: Path) -> None:
    client = _prepare_env(tmp_path)
    headers = {"X-User-Id": "auth0|alice", "X-User-Email": "alice@example.com", "X-User-Name": "Alice"}
    assert client.post("/api/v1/jobs", json={"customer_name": "Acme"}, headers=headers).status_code == 201

    main(["--state-root", get_settings().state_root.as_posix(), "set-role", "auth0|root", "admin"])
    listing = client.get("/api/v1/admin/jobs", headers={"X-User-Id": "auth0|root"})

    assert listing.status_code == 200, listing.text
    [item] = listing.json()["items"]
    assert item["owner_email"] == "alice@example.com"
    assert item["owner_name"] == "Alice"
    assert _users().get_by_external_id("auth0|root").role == UserRole.ADMIN


def test_signature_verification_and_profile_extraction() -> None:
    body = b'{"type":"user.created"}'
    signature = sign_payload(SECRET, "1700000000", body)

    verify_signature(SECRET, "1700000000", signature.upper(), body, tolerance_seconds=300, now=1_700_000_100)
    with pytest.raises(WebhookSignatureError):
        verify_signature(SECRET, "1700000000", signature, body + b" ", tolerance_seconds=300, now=1_700_000_100)
    with pytest.raises(WebhookSignatureError):
        verify_signature(SECRET, "soon", signature, body, tolerance_seconds=300)

    profile = profile_from_event(
        {"id": "user_9", "primary_email_address": {"email_address": "p@example.com"}, "username": "pat"}
    )
    assert (profile.external_id, profile.email, profile.name) == ("user_9", "p@example.com", "pat")
    bare = profile_from_event({"id": "user_10", "email_addresses": []})
    assert (bare.email, bare.name) == (None, None)
