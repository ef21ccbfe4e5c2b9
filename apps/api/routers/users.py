"""
User initialization and profile endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.subscription import Subscription
from routers.auth_scope import get_identity, identity_client
from services.credits import require_user
from services.errors import InvalidRequest
from services.identity import IdentityClaims
from services.plans import ACTIVE_STATUSES
from services.procedures import upsert_user
from services.user_sync import primary_email

router = APIRouter()


class InitializeRequest(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None


class SubscriptionSummary(BaseModel):
    plan_type: str
    billing_frequency: str
    seats: int
    status: str
    current_period_end: Optional[str] = None


class CurrentUserResponse(BaseModel):
    id: str
    clerk_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    plan_type: str
    credits: int
    subscription: Optional[SubscriptionSummary] = None


async def _profile(db: AsyncSession, clerk_id: str) -> CurrentUserResponse:
    user = await require_user(clerk_id, db)
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user.id, Subscription.status.in_(ACTIVE_STATUSES))
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    subscription = result.scalar_one_or_none()
    return CurrentUserResponse(
        id=user.id,
        clerk_id=user.clerk_id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        avatar_url=user.avatar_url,
        plan_type=user.plan_type,
        credits=int(user.credits or 0),
        subscription=SubscriptionSummary(
            plan_type=subscription.plan_type,
            billing_frequency=subscription.billing_frequency,
            seats=subscription.seats,
            status=subscription.status,
            current_period_end=(
                subscription.current_period_end.isoformat() if subscription.current_period_end else None
            ),
        )
        if subscription
        else None,
    )


@router.post("/initialize", response_model=CurrentUserResponse)
async def initialize_user(
    body: InitializeRequest,
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    clerk=Depends(identity_client),
):
    """First-use upsert. New accounts start on the starter plan."""
    email = body.email or identity.email
    first_name, last_name, avatar_url = body.first_name, body.last_name, body.avatar_url
    if not email and clerk is not None:
        profile = await clerk.get_user(identity.subject_id)
        email = primary_email(profile)
        first_name = first_name or profile.get("first_name")
        last_name = last_name or profile.get("last_name")
        avatar_url = avatar_url or profile.get("image_url")
    if not email:
        raise InvalidRequest("An email address is required to initialize the account.")

    await upsert_user(
        db,
        clerk_id=identity.subject_id,
        email=email,
        first_name=first_name,
        last_name=last_name,
        avatar_url=avatar_url,
    )
    return await _profile(db, identity.subject_id)


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    """Profile, plan, credit balance and active subscription."""
    return await _profile(db, identity.subject_id)
