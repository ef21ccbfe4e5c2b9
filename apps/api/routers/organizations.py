"""Organization seats, subscription and team checkout."""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import get_identity, identity_client
from routers.billing import payments_client
from services.billing import create_organization_checkout
from services.identity import IdentityClaims
from services.organizations import get_subscription_summary, list_seats, require_org_member
from services.procedures import assign_organization_seat_with_credits, remove_organization_seat_with_credits

router = APIRouter()
logger = logging.getLogger(__name__)


class AssignSeatRequest(BaseModel):
    user_id: str = Field(min_length=1)
    role: Literal["admin", "member"] = "member"


class OrganizationCheckoutRequest(BaseModel):
    billing_frequency: Literal["monthly", "yearly"] = "monthly"
    seats: int = Field(ge=1)
    org_name: Optional[str] = None
    currency: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


@router.get("/{org_id}/seats")
async def get_seats(
    org_id: str,
    include_revoked: bool = False,
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    clerk=Depends(identity_client),
):
    await require_org_member(identity.subject_id, org_id, clerk_claims=identity, clerk_client=clerk)
    return {"seats": await list_seats(db, org_id, include_revoked=include_revoked)}


@router.post("/{org_id}/seats")
async def assign_seat(
    org_id: str,
    body: AssignSeatRequest,
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    clerk=Depends(identity_client),
):
    await require_org_member(identity.subject_id, org_id, clerk_claims=identity, clerk_client=clerk, admin=True)
    seat = await assign_organization_seat_with_credits(
        db, org_id, body.user_id, role=body.role, assigned_by=identity.subject_id
    )
    logger.info("Seat %s in %s assigned to %s by %s", seat.id, org_id, body.user_id, identity.subject_id)
    return {"success": True, "seat_id": seat.id, "user_id": body.user_id, "role": seat.role}


@router.delete("/{org_id}/seats/{user_id}")
async def remove_seat(
    org_id: str,
    user_id: str,
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    clerk=Depends(identity_client),
):
    await require_org_member(identity.subject_id, org_id, clerk_claims=identity, clerk_client=clerk, admin=True)
    result = await remove_organization_seat_with_credits(db, org_id, user_id)
    return {"success": True, **result}


@router.get("/{org_id}/subscription")
async def get_subscription(
    org_id: str,
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    clerk=Depends(identity_client),
):
    await require_org_member(identity.subject_id, org_id, clerk_claims=identity, clerk_client=clerk)
    return await get_subscription_summary(db, org_id)


@router.post("/{org_id}/checkout")
async def organization_checkout(
    org_id: str,
    body: OrganizationCheckoutRequest,
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    clerk=Depends(identity_client),
    payments=Depends(payments_client),
):
    await require_org_member(identity.subject_id, org_id, clerk_claims=identity, clerk_client=clerk, admin=True)
    return await create_organization_checkout(
        db,
        identity.subject_id,
        org_id,
        org_name=body.org_name,
        billing_frequency=body.billing_frequency,
        seats=body.seats,
        currency=body.currency,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        payments=payments,
    )
