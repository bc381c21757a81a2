"""Signed profile events pushed by the identity provider.

The sender signs ``"<timestamp>.<raw body>"`` with HMAC-SHA256 using the
shared secret and sends the hex digest in ``X-Webhook-Signature`` next to the
unix timestamp in ``X-Webhook-Timestamp``.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Any

SYNCED_EVENT_TYPES = frozenset({"user.created", "user.updated"})


class WebhookSignatureError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class IdentityProfile:
    external_id: str
    email: str | None
    name: str | None


def sign_payload(secret: str, timestamp: str, body: bytes) -> str:
    message = timestamp.encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    timestamp: str | None,
    signature: str | None,
    body: bytes,
    *,
    tolerance_seconds: int,
    now: float | None = None,
) -> None:
    if not timestamp or not signature:
        raise WebhookSignatureError("Missing webhook signature headers")
    try:
        sent_at = int(timestamp)
    except ValueError as exc:
        raise WebhookSignatureError("Malformed webhook timestamp") from exc
    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance_seconds:
        raise WebhookSignatureError("Webhook timestamp outside tolerance")
    expected = sign_payload(secret, timestamp, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise WebhookSignatureError("Webhook signature mismatch")


def profile_from_event(data: dict[str, Any]) -> IdentityProfile:
    """Extract the subject, primary email and display name from a user event."""
    external_id = str(data.get("id") or "").strip()
    if not external_id:
        raise ValueError("Identity event has no user id")

    addresses = [item for item in data.get("email_addresses") or [] if isinstance(item, dict)]
    email = None
    primary = data.get("primary_email_address")
    if isinstance(primary, dict):
        email = primary.get("email_address")
    if email is None and data.get("primary_email_address_id"):
        for item in addresses:
            if item.get("id") == data["primary_email_address_id"]:
                email = item.get("email_address")
                break
    if email is None and addresses:
        email = addresses[0].get("email_address")

    name = " ".join(part for part in (data.get("first_name"), data.get("last_name")) if part) or data.get("username")
    return IdentityProfile(external_id=external_id, email=email or None, name=name or None)
