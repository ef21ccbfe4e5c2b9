"""Identity-provider lifecycle events mirrored into the users table."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.extension_token import ExtensionToken
from models.organization_seat import OrganizationSeat
from models.organization_subscription import OrganizationSubscription
from models.user import User
from services.errors import InvalidRequest, NotFound, SeatAlreadyAssigned, SeatLimitReached, SubscriptionNotFound
from services.procedures import (
    assign_organization_seat_with_credits,
    remove_organization_seat_with_credits,
    upsert_organization,
    upsert_user,
)

logger = logging.getLogger(__name__)


def primary_email(data: Dict[str, Any]) -> Optional[str]:
    """Email flagged primary, else the first listed one."""
    addresses = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    for address in addresses:
        if primary_id and address.get("id") == primary_id and address.get("email_address"):
            return address["email_address"]
    for address in addresses:
        if address.get("email_address"):
            return address["email_address"]
    return None


async def _user_exists(db: AsyncSession, clerk_id: str) -> bool:
    result = await db.execute(select(User.id).where(User.clerk_id == clerk_id))
    return result.scalar_one_or_none() is not None


async def sync_user(db: AsyncSession, data: Dict[str, Any]) -> Dict[str, Any]:
    clerk_id = data.get("id")
    if not clerk_id:
        raise InvalidRequest("User id missing from payload.")

    email = primary_email(data)
    if not email and not await _user_exists(db, clerk_id):
        logger.warning("Skipping user %s: no email address in payload", clerk_id)
        return {"action": "skipped", "reason": "missing_email"}

    user = await upsert_user(
        db,
        clerk_id=clerk_id,
        email=email or "",
        first_name=data.get("first_name"),
        last_name=data.get("last_name"),
        avatar_url=data.get("image_url") or data.get("profile_image_url"),
    )
    return {"action": "upserted", "user_id": user.id}


async def delete_user(db: AsyncSession, data: Dict[str, Any]) -> Dict[str, Any]:
    """Hard delete; tokens, ledger rows, seats and subscriptions go with the user."""
    clerk_id = data.get("id")
    if not clerk_id:
        raise InvalidRequest("User id missing from payload.")

    result = await db.execute(select(User).where(User.clerk_id == clerk_id))
    user = result.scalar_one_or_none()
    if not user:
        return {"action": "skipped", "reason": "unknown_user"}

    active_seats = await db.execute(
        select(OrganizationSeat.organization_subscription_id).where(
            OrganizationSeat.user_id == user.id,
            OrganizationSeat.status == "active",
            OrganizationSeat.organization_subscription_id.is_not(None),
        )
    )
    for subscription_id in active_seats.scalars().all():
        await db.execute(
            update(OrganizationSubscription)
            .where(OrganizationSubscription.id == subscription_id, OrganizationSubscription.seats_used > 0)
            .values(seats_used=OrganizationSubscription.seats_used - 1)
        )

    await db.delete(user)
    await db.commit()
    logger.info("Deleted user %s", clerk_id)
    return {"action": "deleted"}


async def end_session(db: AsyncSession, data: Dict[str, Any]) -> Dict[str, Any]:
    """Revoke extension credentials bound to an ended identity session."""
    session_id = data.get("id")
    if not session_id:
        return {"action": "skipped", "reason": "missing_session"}
    result = await db.execute(
        update(ExtensionToken)
        .where(ExtensionToken.session_id == session_id, ExtensionToken.revoked_at.is_(None))
        .values(revoked_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return {"action": "sessions_revoked", "revoked": int(result.rowcount or 0)}


def _membership_ids(data: Dict[str, Any]) -> tuple:
    organization = data.get("organization") or {}
    public_user = data.get("public_user_data") or {}
    return organization.get("id"), public_user.get("user_id"), organization.get("name")


async def membership_created(db: AsyncSession, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id, clerk_user_id, org_name = _membership_ids(data)
    if not org_id or not clerk_user_id:
        raise InvalidRequest("Membership payload is missing organization or user.")

    await upsert_organization(db, org_id, name=org_name)
    if not await _user_exists(db, clerk_user_id):
        return {"action": "organization_synced", "seat": None, "reason": "unknown_user"}

    role = "admin" if data.get("role") == "org:admin" else "member"
    try:
        seat = await assign_organization_seat_with_credits(db, org_id, clerk_user_id, role=role)
    except (SubscriptionNotFound, SeatLimitReached, SeatAlreadyAssigned) as exc:
        logger.info("No seat assigned to %s in %s: %s", clerk_user_id, org_id, exc.error)
        return {"action": "organization_synced", "seat": None, "reason": exc.error}
    return {"action": "seat_assigned", "seat": seat.id}


async def membership_deleted(db: AsyncSession, data: Dict[str, Any]) -> Dict[str, Any]:
    org_id, clerk_user_id, _ = _membership_ids(data)
    if not org_id or not clerk_user_id:
        raise InvalidRequest("Membership payload is missing organization or user.")
    try:
        result = await remove_organization_seat_with_credits(db, org_id, clerk_user_id)
    except NotFound:
        return {"action": "skipped", "reason": "no_active_seat"}
    return {"action": "seat_removed", **result}


async def handle_identity_event(db: AsyncSession, event: Dict[str, Any]) -> Dict[str, Any]:
    event_type = event.get("type")
    data = event.get("data") or {}
    if event_type in ("user.created", "user.updated"):
        result = await sync_user(db, data)
    elif event_type == "user.deleted":
        result = await delete_user(db, data)
    elif event_type in ("session.ended", "session.revoked"):
        result = await end_session(db, data)
    elif event_type in ("organization.created", "organization.updated"):
        if not data.get("id"):
            raise InvalidRequest("Organization id missing from payload.")
        await upsert_organization(db, data["id"], name=data.get("name"))
        result = {"action": "organization_synced"}
    elif event_type == "organization.membership.created":
        result = await membership_created(db, data)
    elif event_type == "organization.membership.deleted":
        result = await membership_deleted(db, data)
    else:
        logger.info("Ignoring identity event %s", event_type)
        return {"received": True, "handled": False, "type": event_type}
    return {"received": True, "handled": True, "type": event_type, **result}
