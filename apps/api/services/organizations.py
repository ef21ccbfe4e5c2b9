"""Organization membership, seat gating and seat management."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.organization import Organization
from models.organization_seat import OrganizationSeat
from models.organization_subscription import OrganizationSubscription
from models.user import User
from services.errors import Forbidden, IdentityProviderError, OrganizationNotFound, SubscriptionNotFound
from services.identity import IdentityClaims
from services.plans import ACTIVE_STATUSES, ENTITLED_STATUSES, ORG_ADMIN_ROLE, ORG_MEMBER_ROLE

logger = logging.getLogger(__name__)


def _membership_org_id(membership: Dict[str, Any]) -> Optional[str]:
    organization = membership.get("organization")
    if isinstance(organization, dict) and organization.get("id"):
        return str(organization["id"])
    for key in ("organization_id", "organizationId"):
        if membership.get(key):
            return str(membership[key])
    return None


async def resolve_org_membership(
    subject_id: str,
    org_id: Optional[str],
    *,
    clerk_claims: Optional[IdentityClaims] = None,
    clerk_client=None,
) -> Optional[Dict[str, str]]:
    """Return ``{"org_role", "source"}`` when membership is confirmed, else None.

    Session claims are consulted first; on a miss the identity provider API is
    the source of truth.
    """
    if not org_id:
        return None

    if clerk_claims is not None:
        role = clerk_claims.org_role(org_id)
        if role:
            return {"org_role": role, "source": "claims"}

    if clerk_client is None:
        from services.clerk import get_clerk_client

        clerk_client = get_clerk_client()

    try:
        memberships = await clerk_client.list_user_organization_memberships(subject_id)
    except IdentityProviderError as exc:
        logger.error("Membership lookup for %s in %s failed: %s", subject_id, org_id, exc)
        return None

    for membership in memberships:
        if _membership_org_id(membership) == org_id:
            return {"org_role": membership.get("role") or ORG_MEMBER_ROLE, "source": "api"}
    return None


async def resolve_org_attribution_claims(
    db: AsyncSession,
    subject_id: str,
    org_id: Optional[str],
    *,
    clerk_claims: Optional[IdentityClaims] = None,
    clerk_client=None,
) -> Optional[Dict[str, Any]]:
    """Organization-scoped token claims, seat-gated.

    Confirmed members without an active seat, or whose seat belongs to a
    canceled or incomplete subscription, get None and fall back to a
    personal token.
    """
    if not org_id:
        return None

    membership = await resolve_org_membership(
        subject_id, org_id, clerk_claims=clerk_claims, clerk_client=clerk_client
    )
    if not membership:
        return None

    seat_result = await db.execute(
        select(OrganizationSeat)
        .where(
            OrganizationSeat.clerk_org_id == org_id,
            OrganizationSeat.clerk_user_id == subject_id,
            OrganizationSeat.status == "active",
        )
        .limit(1)
    )
    seat = seat_result.scalar_one_or_none()
    if not seat or not seat.organization_subscription_id:
        return None

    sub_result = await db.execute(
        select(OrganizationSubscription).where(
            OrganizationSubscription.id == seat.organization_subscription_id,
            OrganizationSubscription.status.in_(ENTITLED_STATUSES),
        )
    )
    subscription = sub_result.scalar_one_or_none()
    if not subscription:
        return None

    org_result = await db.execute(select(Organization).where(Organization.clerk_org_id == org_id))
    organization = org_result.scalar_one_or_none()

    return {
        "pool": "organization",
        "clerk_org_id": org_id,
        "organization_id": organization.id if organization else subscription.organization_id,
        "organization_name": organization.name if organization else None,
        "stripe_customer_id": organization.stripe_customer_id if organization else None,
        "organization_subscription_id": subscription.id,
        "seat_id": seat.id,
        "seat_role": seat.role,
        "org_role": membership["org_role"],
    }


async def require_org_member(
    subject_id: str,
    org_id: str,
    *,
    clerk_claims: Optional[IdentityClaims] = None,
    clerk_client=None,
    admin: bool = False,
) -> Dict[str, str]:
    membership = await resolve_org_membership(
        subject_id, org_id, clerk_claims=clerk_claims, clerk_client=clerk_client
    )
    if not membership:
        raise Forbidden("User does not belong to this organization.")
    if admin and membership["org_role"] != ORG_ADMIN_ROLE:
        raise Forbidden("User is not an organization admin.")
    return membership


async def get_organization(db: AsyncSession, org_id: str) -> Organization:
    result = await db.execute(
        select(Organization).where(Organization.clerk_org_id == org_id).execution_options(populate_existing=True)
    )
    organization = result.scalar_one_or_none()
    if not organization:
        raise OrganizationNotFound(f"Unknown organization {org_id}.")
    return organization


async def get_active_org_subscription(db: AsyncSession, organization_id: str) -> Optional[OrganizationSubscription]:
    result = await db.execute(
        select(OrganizationSubscription)
        .where(
            OrganizationSubscription.organization_id == organization_id,
            OrganizationSubscription.status.in_(ACTIVE_STATUSES),
        )
        .order_by(OrganizationSubscription.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def serialize_org_subscription(subscription: OrganizationSubscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "stripe_subscription_id": subscription.stripe_subscription_id,
        "plan_type": subscription.plan_type,
        "billing_frequency": subscription.billing_frequency,
        "status": subscription.status,
        "seats_total": subscription.seats_total,
        "seats_used": subscription.seats_used,
        "seats_available": max(int(subscription.seats_total) - int(subscription.seats_used), 0),
        "credits_per_seat": subscription.credits_per_seat,
        "total_credits": subscription.total_credits,
        "current_period_end": subscription.current_period_end.isoformat() if subscription.current_period_end else None,
    }


async def get_subscription_summary(db: AsyncSession, org_id: str) -> Dict[str, Any]:
    organization = await get_organization(db, org_id)
    subscription = await get_active_org_subscription(db, organization.id)
    if not subscription:
        raise SubscriptionNotFound("Organization has no active subscription.")
    return {
        "organization": {"id": organization.id, "clerk_org_id": organization.clerk_org_id, "name": organization.name},
        "subscription": serialize_org_subscription(subscription),
    }


async def list_seats(db: AsyncSession, org_id: str, *, include_revoked: bool = False) -> List[Dict[str, Any]]:
    organization = await get_organization(db, org_id)
    stmt = (
        select(OrganizationSeat, User.email)
        .join(User, User.id == OrganizationSeat.user_id)
        .where(OrganizationSeat.organization_id == organization.id)
        .order_by(OrganizationSeat.created_at.asc())
    )
    if not include_revoked:
        stmt = stmt.where(OrganizationSeat.status == "active")
    result = await db.execute(stmt)
    return [
        {
            "id": seat.id,
            "user_id": seat.clerk_user_id,
            "email": email,
            "role": seat.role,
            "status": seat.status,
            "assigned_by": seat.assigned_by,
            "created_at": seat.created_at.isoformat() if seat.created_at else None,
            "revoked_at": seat.revoked_at.isoformat() if seat.revoked_at else None,
        }
        for seat, email in result.all()
    ]
