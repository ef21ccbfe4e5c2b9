"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import ExtensionContext, get_active_extension_context, get_identity
from routers.rate_limit import rate_limit
from services.billing import (
    MAX_CREDIT_PURCHASE,
    create_credit_checkout,
    create_portal_session,
    create_subscription_checkout,
    process_payment_success,
)
from services.credits import consume_credits, get_credit_summary
from services.identity import IdentityClaims
from services.payments import get_payments_client

router = APIRouter()
logger = logging.getLogger(__name__)


def payments_client():
    """Payments provider client; overridden in tests."""
    return get_payments_client()


class CheckoutRequest(BaseModel):
    plan_type: Literal["pro", "teams"]
    billing_frequency: Literal["monthly", "yearly"] = "monthly"
    seats: int = Field(default=1, ge=1)
    currency: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CreditCheckoutRequest(BaseModel):
    credits: int = Field(ge=1, le=MAX_CREDIT_PURCHASE)
    currency: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class PaymentSuccessRequest(BaseModel):
    session_id: str = Field(min_length=1)


class UsageRequest(BaseModel):
    amount: int = Field(ge=1)
    description: str = Field(default="Extension usage", max_length=255)
    reference_id: Optional[str] = None


@router.post("/checkout")
async def create_checkout_session(
    body: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    payments=Depends(payments_client),
):
    return await create_subscription_checkout(
        db,
        identity.subject_id,
        plan_type=body.plan_type,
        billing_frequency=body.billing_frequency,
        seats=body.seats,
        currency=body.currency,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        payments=payments,
    )


@router.post("/credits/checkout")
async def create_credit_checkout_session(
    body: CreditCheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    payments=Depends(payments_client),
):
    return await create_credit_checkout(
        db,
        identity.subject_id,
        credits=body.credits,
        currency=body.currency,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        payments=payments,
    )


@router.post("/portal")
async def billing_portal(
    body: PortalRequest,
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    payments=Depends(payments_client),
):
    return await create_portal_session(db, identity.subject_id, return_url=body.return_url, payments=payments)


@router.post("/payment-success")
async def payment_success(
    body: PaymentSuccessRequest,
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    payments=Depends(payments_client),
):
    """Confirm a checkout from the success page; the webhook may already have run."""
    return await process_payment_success(db, identity.subject_id, body.session_id, payments=payments)


@router.get("/credits")
async def credits_summary(
    limit: int = 30,
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(identity.subject_id, db, limit=max(1, min(limit, 100)))


@router.post("/credits/usage")
async def record_usage(
    body: UsageRequest,
    context: ExtensionContext = Depends(get_active_extension_context),
    db: AsyncSession = Depends(get_db),
):
    """Debit credits for extension usage. 402 when the balance does not cover it."""
    result = await consume_credits(
        context.subject_id,
        db,
        cost=body.amount,
        reason=body.description,
        reference_id=body.reference_id,
    )
    return {"success": True, **result}
