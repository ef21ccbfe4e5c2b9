"""
Provider webhooks. Signatures are checked against the raw body before any
payload field is read.
"""

import json
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.billing import payments_client
from services.billing import claim_event, handle_stripe_event, release_event
from services.errors import InvalidRequest
from services.stripe_events import construct_event
from services.user_sync import handle_identity_event
from services.webhook_signatures import verify_svix_signature

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments=Depends(payments_client),
):
    payload = await request.body()
    event = construct_event(payload, request.headers.get("stripe-signature"))
    return await handle_stripe_event(db, event, payments)


@router.post("/clerk")
async def clerk_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    payload = await request.body()
    msg_id = verify_svix_signature(payload, request.headers)
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise InvalidRequest("Webhook body is not valid JSON.") from exc
    if not isinstance(event, dict):
        raise InvalidRequest("Webhook body must be a JSON object.")

    event_type = str(event.get("type") or "unknown")
    if not await claim_event(db, msg_id, event_type, provider="clerk"):
        logger.info("Duplicate identity webhook %s (%s) skipped", msg_id, event_type)
        return {"received": True, "handled": False, "duplicate": True, "type": event_type}
    try:
        return await handle_identity_event(db, event)
    except Exception:
        logger.exception("Identity webhook %s (%s) failed; releasing claim", msg_id, event_type)
        await release_event(db, msg_id)
        raise
