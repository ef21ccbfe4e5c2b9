"""Svix-style signature verification for identity-provider webhooks."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from typing import Mapping, Optional

from config import require_clerk_webhook_secret, settings
from services.errors import WebhookSignatureError

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"


def _secret_bytes(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        secret = secret[len(SECRET_PREFIX):]
    try:
        return base64.b64decode(secret)
    except ValueError as exc:
        raise WebhookSignatureError("Webhook signing secret is not valid base64.") from exc


def sign_payload(secret: str, msg_id: str, timestamp: int, body: bytes) -> str:
    """Return the ``v1,<base64>`` signature for one delivery."""
    to_sign = f"{msg_id}.{timestamp}.".encode() + body
    digest = hmac.new(_secret_bytes(secret), to_sign, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode()


def verify_svix_signature(
    body: bytes,
    headers: Mapping[str, str],
    secret: Optional[str] = None,
    *,
    tolerance_seconds: Optional[int] = None,
    now: Optional[int] = None,
) -> str:
    """Verify ``svix-id``/``svix-timestamp``/``svix-signature`` over the raw body.

    Returns the message id. The signature header may hold several
    space-separated ``version,signature`` entries; any matching ``v1`` passes.
    """
    secret = secret or require_clerk_webhook_secret()
    msg_id = headers.get("svix-id")
    timestamp = headers.get("svix-timestamp")
    signature_header = headers.get("svix-signature")
    if not msg_id or not timestamp or not signature_header:
        raise WebhookSignatureError("Missing svix signature headers.")

    try:
        sent_at = int(timestamp)
    except ValueError as exc:
        raise WebhookSignatureError("Invalid svix-timestamp header.") from exc

    tolerance = settings.CLERK_WEBHOOK_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds
    current = int(time.time()) if now is None else now
    if abs(current - sent_at) > tolerance:
        raise WebhookSignatureError("Webhook timestamp is outside the tolerance window.")

    expected = sign_payload(secret, msg_id, sent_at, body).split(",", 1)[1]
    for entry in signature_header.split():
        version, _, candidate = entry.partition(",")
        if version == "v1" and hmac.compare_digest(candidate, expected):
            return msg_id

    logger.warning("Rejected identity webhook %s: signature mismatch", msg_id)
    raise WebhookSignatureError("Invalid webhook signature.")
