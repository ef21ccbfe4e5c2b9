"""Billing orchestration: checkout creation and webhook reconciliation.

Credit grants triggered by a checkout carry the checkout session id as the
ledger reference, so the webhook and the browser-side confirmation can both
run the same reconciliation and only one of them grants.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional, Union

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.organization_seat import OrganizationSeat
from models.organization_subscription import OrganizationSubscription
from models.subscription import Subscription
from models.user import User
from models.webhook_event import WebhookEvent
from services.credits import grant_once, require_user
from services.errors import (
    ConfigurationError,
    Forbidden,
    InvalidRequest,
    NotFound,
    PersistenceError,
    SeatAlreadyAssigned,
)
from services.plans import (
    ACTIVE_STATUSES,
    BASE_PLAN,
    PAID_PLAN_TYPES,
    credits_per_seat,
    normalize_frequency,
    normalize_status,
    plan_allotment,
    resolve_price_id,
    trial_allotment,
)
from services.procedures import (
    assign_organization_seat_with_credits,
    reset_monthly_credits,
    upsert_organization,
)
from services.stripe_events import (
    CheckoutSession,
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    StripeSubscription,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
)

logger = logging.getLogger(__name__)

PURCHASE_SUBSCRIPTION = "subscription"
PURCHASE_CREDITS = "credit_purchase"
PURCHASE_ORGANIZATION = "organization_subscription"
MAX_CREDIT_PURCHASE = 10000


def _to_datetime(epoch: Optional[int]) -> Optional[datetime]:
    if not epoch:
        return None
    return datetime.fromtimestamp(int(epoch), tz=timezone.utc)


def _default_success_url() -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/payment-success?session_id={{CHECKOUT_SESSION_ID}}"


def _default_cancel_url() -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/payment-cancelled"


def _normalize_currency(currency: Optional[str]) -> str:
    value = (currency or settings.DEFAULT_CURRENCY).strip().lower()
    if value not in [c.lower() for c in settings.SUPPORTED_CURRENCIES]:
        raise InvalidRequest(f"Unsupported currency: {value}")
    return value


def _validate_seats(plan_type: str, seats: int) -> int:
    seats = int(seats or 1)
    if plan_type == "pro" and seats != 1:
        raise InvalidRequest("The pro plan is billed for exactly one seat.")
    if seats < 1 or seats > int(settings.MAX_TEAM_SEATS):
        raise InvalidRequest(f"Seats must be between 1 and {settings.MAX_TEAM_SEATS}.")
    return seats


# ---------------------------------------------------------------------------
# Customer resolution and checkout creation
# ---------------------------------------------------------------------------


async def resolve_customer_id(
    payments,
    *,
    stored_customer_id: Optional[str],
    email: Optional[str],
    name: Optional[str] = None,
    metadata: Optional[Dict[str, str]] = None,
    idempotency_key: Optional[str] = None,
) -> str:
    """Find or create the provider customer.

    1. the stored customer id, when the provider still knows it;
    2. an existing customer with the same email;
    3. a new customer.

    A missing or deleted stored customer falls through to the next step;
    any other provider failure propagates as PaymentsProviderError.
    """
    if stored_customer_id:
        customer = await payments.retrieve_customer(stored_customer_id)
        if customer:
            return customer["id"]
        logger.info("Stored customer %s no longer exists; resolving by email", stored_customer_id)

    if email:
        customer = await payments.find_customer_by_email(email)
        if customer:
            return customer["id"]

    customer = await payments.create_customer(
        email=email,
        name=name,
        metadata=metadata,
        idempotency_key=idempotency_key,
    )
    return customer["id"]


async def _ensure_user_customer(db: AsyncSession, user: User, payments) -> str:
    name = " ".join(part for part in (user.first_name, user.last_name) if part) or None
    customer_id = await resolve_customer_id(
        payments,
        stored_customer_id=user.stripe_customer_id,
        email=user.email,
        name=name,
        metadata={"clerk_user_id": user.clerk_id},
        idempotency_key=f"customer-create-{user.clerk_id}",
    )
    if user.stripe_customer_id != customer_id:
        user.stripe_customer_id = customer_id
        try:
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("Failed to store customer id for %s: %s", user.clerk_id, exc)
            raise PersistenceError("Failed to store billing customer.") from exc
    return customer_id


def _checkout_response(session: Dict[str, Any]) -> Dict[str, Any]:
    return {"session_id": session.get("id"), "url": session.get("url")}


async def create_subscription_checkout(
    db: AsyncSession,
    subject_id: str,
    *,
    plan_type: str,
    billing_frequency: str,
    seats: int = 1,
    currency: Optional[str] = None,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    payments,
) -> Dict[str, Any]:
    """Hosted checkout for a personal subscription. Returns the redirect URL."""
    if plan_type not in PAID_PLAN_TYPES:
        raise InvalidRequest(f"Plan {plan_type} cannot be purchased through checkout.")
    billing_frequency = normalize_frequency(billing_frequency)
    seats = _validate_seats(plan_type, seats)
    currency = _normalize_currency(currency)
    price_id = resolve_price_id(plan_type, billing_frequency)
    if not price_id:
        raise ConfigurationError(f"No price configured for {plan_type}/{billing_frequency}.")

    user = await require_user(subject_id, db)
    customer_id = await _ensure_user_customer(db, user, payments)

    metadata = {
        "clerk_user_id": subject_id,
        "plan_type": plan_type,
        "billing_frequency": billing_frequency,
        "seats": str(seats),
        "currency": currency,
        "purchase_type": PURCHASE_SUBSCRIPTION,
    }
    subscription_data: Dict[str, Any] = {"metadata": dict(metadata)}
    if int(settings.TRIAL_DAYS) > 0:
        subscription_data["trial_period_days"] = int(settings.TRIAL_DAYS)

    session = await payments.create_checkout_session(
        {
            "customer": customer_id,
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": seats}],
            "success_url": success_url or _default_success_url(),
            "cancel_url": cancel_url or _default_cancel_url(),
            "metadata": {**metadata, "price_id": price_id},
            "subscription_data": subscription_data,
        }
    )
    logger.info("Created %s/%s checkout %s for %s", plan_type, billing_frequency, session.get("id"), subject_id)
    return _checkout_response(session)


async def create_credit_checkout(
    db: AsyncSession,
    subject_id: str,
    *,
    credits: int,
    currency: Optional[str] = None,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    payments,
) -> Dict[str, Any]:
    """One-off credit purchase, granted when the session completes."""
    credits = int(credits)
    if credits < 1 or credits > MAX_CREDIT_PURCHASE:
        raise InvalidRequest(f"Credits must be between 1 and {MAX_CREDIT_PURCHASE}.")
    if not settings.STRIPE_CREDIT_PRICE_ID:
        raise ConfigurationError("STRIPE_CREDIT_PRICE_ID is not configured")
    currency = _normalize_currency(currency)

    user = await require_user(subject_id, db)
    customer_id = await _ensure_user_customer(db, user, payments)
    metadata = {
        "clerk_user_id": subject_id,
        "purchase_type": PURCHASE_CREDITS,
        "credits": str(credits),
        "currency": currency,
    }
    session = await payments.create_checkout_session(
        {
            "customer": customer_id,
            "mode": "payment",
            "line_items": [{"price": settings.STRIPE_CREDIT_PRICE_ID, "quantity": credits}],
            "success_url": success_url or _default_success_url(),
            "cancel_url": cancel_url or _default_cancel_url(),
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
    )
    return _checkout_response(session)


async def create_organization_checkout(
    db: AsyncSession,
    subject_id: str,
    org_id: str,
    *,
    org_name: Optional[str] = None,
    billing_frequency: str,
    seats: int,
    currency: Optional[str] = None,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    payments,
) -> Dict[str, Any]:
    """Teams checkout billed to the organization's own customer."""
    plan_type = "teams"
    billing_frequency = normalize_frequency(billing_frequency)
    seats = _validate_seats(plan_type, seats)
    currency = _normalize_currency(currency)
    price_id = resolve_price_id(plan_type, billing_frequency)
    if not price_id:
        raise ConfigurationError(f"No price configured for {plan_type}/{billing_frequency}.")

    await require_user(subject_id, db)
    organization = await upsert_organization(db, org_id, name=org_name)
    customer_id = await resolve_customer_id(
        payments,
        stored_customer_id=organization.stripe_customer_id,
        email=None,
        name=organization.name,
        metadata={"clerk_org_id": org_id},
        idempotency_key=f"customer-create-{org_id}",
    )
    if organization.stripe_customer_id != customer_id:
        await upsert_organization(db, org_id, stripe_customer_id=customer_id)

    metadata = {
        "clerk_user_id": subject_id,
        "org_id": org_id,
        "plan_type": plan_type,
        "billing_frequency": billing_frequency,
        "seats": str(seats),
        "currency": currency,
        "purchase_type": PURCHASE_ORGANIZATION,
    }
    session = await payments.create_checkout_session(
        {
            "customer": customer_id,
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": seats}],
            "success_url": success_url or _default_success_url(),
            "cancel_url": cancel_url or _default_cancel_url(),
            "metadata": metadata,
            "subscription_data": {"metadata": dict(metadata)},
        }
    )
    return _checkout_response(session)


async def create_portal_session(db: AsyncSession, subject_id: str, *, return_url: Optional[str], payments) -> Dict[str, Any]:
    user = await require_user(subject_id, db)
    if not user.stripe_customer_id:
        raise NotFound("No billing account exists for this user.")
    session = await payments.create_portal_session(
        customer_id=user.stripe_customer_id,
        return_url=return_url or f"{settings.PUBLIC_BASE_URL.rstrip('/')}/dashboard",
    )
    return {"url": session.get("url")}


# ---------------------------------------------------------------------------
# Webhook idempotency
# ---------------------------------------------------------------------------


async def claim_event(db: AsyncSession, event_id: str, event_type: str, provider: str = "stripe") -> bool:
    """Record the event id; False when another delivery already claimed it."""
    try:
        db.add(WebhookEvent(event_id=event_id, provider=provider, event_type=event_type))
        await db.commit()
        return True
    except IntegrityError:
        await db.rollback()
        return False


async def release_event(db: AsyncSession, event_id: str) -> None:
    """Forget a claim so the provider's retry can process the event again."""
    await db.rollback()
    await db.execute(delete(WebhookEvent).where(WebhookEvent.event_id == event_id))
    await db.commit()


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


async def _subject_for_customer(
    db: AsyncSession,
    customer_id: Optional[str],
    metadata_subject: Optional[str],
    payments=None,
) -> Optional[str]:
    if metadata_subject:
        return metadata_subject
    if customer_id:
        result = await db.execute(select(User.clerk_id).where(User.stripe_customer_id == customer_id))
        subject = result.scalar_one_or_none()
        if subject:
            return subject
        if payments is not None:
            customer = await payments.retrieve_customer(customer_id)
            if customer:
                return (customer.get("metadata") or {}).get("clerk_user_id")
    return None


async def _personal_subscription(db: AsyncSession, stripe_subscription_id: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _org_subscription(db: AsyncSession, stripe_subscription_id: str) -> Optional[OrganizationSubscription]:
    result = await db.execute(
        select(OrganizationSubscription)
        .where(OrganizationSubscription.stripe_subscription_id == stripe_subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _fetch_subscription(payments, subscription_id: Optional[str]) -> Optional[StripeSubscription]:
    if not subscription_id or payments is None:
        return None
    return StripeSubscription.model_validate(await payments.retrieve_subscription(subscription_id))


async def _upsert_personal_subscription(
    db: AsyncSession,
    user: User,
    stripe_subscription_id: str,
    *,
    plan_type: str,
    billing_frequency: str,
    seats: int,
    status: str,
    period: tuple,
) -> Subscription:
    row = await _personal_subscription(db, stripe_subscription_id)
    if row is None:
        row = Subscription(user_id=user.id, stripe_subscription_id=stripe_subscription_id)
        db.add(row)
    row.plan_type = plan_type
    row.billing_frequency = billing_frequency
    row.seats = seats
    row.status = status
    row.current_period_start = _to_datetime(period[0]) or row.current_period_start
    row.current_period_end = _to_datetime(period[1]) or row.current_period_end
    return row


async def _reconcile_credit_purchase(db: AsyncSession, session: CheckoutSession) -> Dict[str, Any]:
    subject_id = session.meta("clerk_user_id")
    credits = int(session.meta("credits", "0") or 0)
    if not subject_id or credits <= 0:
        raise InvalidRequest("Credit purchase session is missing its metadata.")
    result = await grant_once(
        subject_id,
        db,
        amount=credits,
        description=f"Purchased {credits} credits",
        reference_id=session.id,
    )
    return {"action": "credit_purchase", "subject_id": subject_id, **result}


async def _reconcile_subscription_checkout(db: AsyncSession, session: CheckoutSession, payments) -> Dict[str, Any]:
    subject_id = await _subject_for_customer(db, session.customer_id, session.meta("clerk_user_id"), payments)
    if not subject_id:
        logger.warning("Checkout %s has no resolvable user; skipping", session.id)
        return {"action": "skipped", "reason": "unknown_user"}
    user = await require_user(subject_id, db)

    plan_type = session.meta("plan_type", "pro")
    billing_frequency = normalize_frequency(session.meta("billing_frequency"))
    seats = max(int(session.meta("seats", "1") or 1), 1)

    provider_sub = await _fetch_subscription(payments, session.subscription_id)
    status = normalize_status(provider_sub.status) if provider_sub else "active"
    period = provider_sub.period() if provider_sub else (None, None)

    try:
        if session.subscription_id:
            await _upsert_personal_subscription(
                db,
                user,
                session.subscription_id,
                plan_type=plan_type,
                billing_frequency=billing_frequency,
                seats=seats,
                status=status,
                period=period,
            )
        user.plan_type = plan_type
        if session.customer_id and not user.stripe_customer_id:
            user.stripe_customer_id = session.customer_id
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Failed to store subscription for checkout %s: %s", session.id, exc)
        raise PersistenceError("Failed to store subscription.") from exc

    if status == "trialing":
        amount = trial_allotment(seats)
        description = f"{plan_type} trial credits ({seats} seat{'s' if seats > 1 else ''})"
    else:
        amount = plan_allotment(billing_frequency, seats)
        description = f"{plan_type} plan {billing_frequency} credits ({seats} seat{'s' if seats > 1 else ''})"

    result = await grant_once(subject_id, db, amount=amount, description=description, reference_id=session.id)
    logger.info(
        "Checkout %s reconciled for %s: plan=%s granted=%s duplicate=%s",
        session.id,
        subject_id,
        plan_type,
        result["granted"],
        result["duplicate"],
    )
    return {"action": "subscription", "subject_id": subject_id, "plan_type": plan_type, **result}


async def _reconcile_organization_checkout(db: AsyncSession, session: CheckoutSession, payments) -> Dict[str, Any]:
    org_id = session.meta("org_id")
    purchaser = session.meta("clerk_user_id")
    if not org_id or not session.subscription_id:
        raise InvalidRequest("Organization checkout is missing its metadata.")

    if await _org_subscription(db, session.subscription_id):
        return {"action": "organization_subscription", "org_id": org_id, "duplicate": True}

    billing_frequency = normalize_frequency(session.meta("billing_frequency"))
    seats = max(int(session.meta("seats", "1") or 1), 1)
    per_seat = credits_per_seat(billing_frequency)
    provider_sub = await _fetch_subscription(payments, session.subscription_id)
    period = provider_sub.period() if provider_sub else (None, None)

    organization = await upsert_organization(db, org_id, stripe_customer_id=session.customer_id)
    subscription = OrganizationSubscription(
        organization_id=organization.id,
        stripe_subscription_id=session.subscription_id,
        plan_type=session.meta("plan_type", "teams"),
        billing_frequency=billing_frequency,
        seats_total=seats,
        seats_used=0,
        credits_per_seat=per_seat,
        total_credits=seats * per_seat,
        status=normalize_status(provider_sub.status) if provider_sub else "active",
        current_period_start=_to_datetime(period[0]),
        current_period_end=_to_datetime(period[1]),
    )
    try:
        db.add(subscription)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return {"action": "organization_subscription", "org_id": org_id, "duplicate": True}

    seat_id = None
    if purchaser:
        try:
            seat = await assign_organization_seat_with_credits(
                db, org_id, purchaser, role="admin", assigned_by=purchaser
            )
            seat_id = seat.id
        except SeatAlreadyAssigned:
            logger.info("Purchaser %s already holds a seat in %s", purchaser, org_id)
    return {
        "action": "organization_subscription",
        "org_id": org_id,
        "organization_subscription_id": subscription.id,
        "seat_id": seat_id,
        "duplicate": False,
    }


async def reconcile_checkout_session(db: AsyncSession, session: CheckoutSession, payments) -> Dict[str, Any]:
    """Apply a completed checkout; safe to run more than once per session."""
    if session.payment_status not in ("paid", "no_payment_required"):
        logger.info("Checkout %s not paid yet (%s)", session.id, session.payment_status)
        return {"action": "skipped", "reason": "unpaid"}

    purchase_type = session.meta("purchase_type")
    if purchase_type == PURCHASE_CREDITS:
        return await _reconcile_credit_purchase(db, session)
    if purchase_type == PURCHASE_ORGANIZATION or session.meta("org_id"):
        return await _reconcile_organization_checkout(db, session, payments)
    return await _reconcile_subscription_checkout(db, session, payments)


async def process_payment_success(db: AsyncSession, subject_id: str, session_id: str, *, payments) -> Dict[str, Any]:
    """Browser-side confirmation after the checkout redirect."""
    session = CheckoutSession.model_validate(await payments.retrieve_checkout_session(session_id))
    owner = session.meta("clerk_user_id")
    if owner and owner != subject_id:
        raise Forbidden("Checkout session belongs to another user.")
    result = await reconcile_checkout_session(db, session, payments)
    return {"success": True, "session_id": session.id, **result}


async def _on_subscription_created(db: AsyncSession, subscription: StripeSubscription, payments) -> Dict[str, Any]:
    if subscription.meta("org_id"):
        return {"action": "skipped", "reason": "organization_handled_at_checkout"}
    subject_id = await _subject_for_customer(
        db, subscription.customer_id, subscription.meta("clerk_user_id"), payments
    )
    if not subject_id:
        return {"action": "skipped", "reason": "unknown_user"}
    user = await require_user(subject_id, db)
    frequency = subscription.meta("billing_frequency") or ("yearly" if subscription.interval == "year" else "monthly")
    await _upsert_personal_subscription(
        db,
        user,
        subscription.id,
        plan_type=subscription.meta("plan_type", "pro"),
        billing_frequency=normalize_frequency(frequency),
        seats=int(subscription.meta("seats") or subscription.quantity or 1),
        status=normalize_status(subscription.status),
        period=subscription.period(),
    )
    await db.commit()
    return {"action": "subscription_created", "subject_id": subject_id}


async def _on_subscription_updated(db: AsyncSession, subscription: StripeSubscription, payments) -> Dict[str, Any]:
    status = normalize_status(subscription.status)
    period = subscription.period()

    org_row = await _org_subscription(db, subscription.id)
    if org_row is not None:
        org_row.status = status
        org_row.current_period_start = _to_datetime(period[0]) or org_row.current_period_start
        org_row.current_period_end = _to_datetime(period[1]) or org_row.current_period_end
        if subscription.quantity and subscription.quantity >= org_row.seats_used:
            org_row.seats_total = subscription.quantity
            org_row.total_credits = subscription.quantity * int(org_row.credits_per_seat or 0)
        await db.commit()
        return {"action": "organization_subscription_updated", "status": status}

    row = await _personal_subscription(db, subscription.id)
    if row is None:
        return await _on_subscription_created(db, subscription, payments)

    previous_status = row.status
    row.status = status
    row.current_period_start = _to_datetime(period[0]) or row.current_period_start
    row.current_period_end = _to_datetime(period[1]) or row.current_period_end
    if subscription.quantity:
        row.seats = subscription.quantity
    user_result = await db.execute(select(User).where(User.id == row.user_id))
    user = user_result.scalar_one()
    if status in ACTIVE_STATUSES:
        user.plan_type = subscription.meta("plan_type") or row.plan_type
    await db.commit()

    result: Dict[str, Any] = {"action": "subscription_updated", "status": status, "granted": 0}
    if previous_status == "trialing" and status == "active":
        top_up = plan_allotment(row.billing_frequency, row.seats) - trial_allotment(row.seats)
        if top_up > 0:
            grant = await grant_once(
                user.clerk_id,
                db,
                amount=top_up,
                description="Trial converted to paid plan",
                reference_id=f"{subscription.id}:trial_conversion",
                kind="conversion",
            )
            result["granted"] = grant["granted"]
    return result


async def _on_subscription_deleted(db: AsyncSession, subscription: StripeSubscription) -> Dict[str, Any]:
    org_row = await _org_subscription(db, subscription.id)
    if org_row is not None:
        org_row.status = "canceled"
        # Seats end with the subscription; credits already granted stay.
        revoked = await db.execute(
            update(OrganizationSeat)
            .where(
                OrganizationSeat.organization_subscription_id == org_row.id,
                OrganizationSeat.status == "active",
            )
            .values(status="revoked", revoked_at=datetime.now(timezone.utc))
        )
        org_row.seats_used = 0
        await db.commit()
        return {"action": "organization_subscription_canceled", "seats_revoked": revoked.rowcount}

    row = await _personal_subscription(db, subscription.id)
    if row is None:
        return {"action": "skipped", "reason": "unknown_subscription"}
    row.status = "canceled"
    user_result = await db.execute(select(User).where(User.id == row.user_id))
    user = user_result.scalar_one()
    # Unused credits stay with the user.
    user.plan_type = BASE_PLAN
    await db.commit()
    return {"action": "subscription_canceled", "subject_id": user.clerk_id}


async def _on_invoice_failed(db: AsyncSession, subscription_id: Optional[str]) -> Dict[str, Any]:
    if not subscription_id:
        return {"action": "skipped", "reason": "not_a_subscription_invoice"}
    row: Union[Subscription, OrganizationSubscription, None] = await _personal_subscription(db, subscription_id)
    if row is None:
        row = await _org_subscription(db, subscription_id)
    if row is None:
        return {"action": "skipped", "reason": "unknown_subscription"}
    row.status = "past_due"
    await db.commit()
    return {"action": "marked_past_due"}


async def _on_invoice_paid(db: AsyncSession, event: InvoicePaymentSucceeded, payments) -> Dict[str, Any]:
    invoice = event.data.object
    if invoice.billing_reason != "subscription_cycle" or not invoice.subscription_id:
        # Initial invoices are covered by checkout completion.
        return {"action": "skipped", "reason": invoice.billing_reason or "no_subscription"}

    provider_sub = await _fetch_subscription(payments, invoice.subscription_id)
    period = provider_sub.period() if provider_sub else (None, None)

    org_row = await _org_subscription(db, invoice.subscription_id)
    if org_row is not None:
        org_row.status = "active"
        org_row.current_period_start = _to_datetime(period[0]) or org_row.current_period_start
        org_row.current_period_end = _to_datetime(period[1]) or org_row.current_period_end
        await db.commit()
        seats = await db.execute(
            select(OrganizationSeat.clerk_user_id).where(
                OrganizationSeat.organization_subscription_id == org_row.id,
                OrganizationSeat.status == "active",
            )
        )
        granted = 0
        for clerk_user_id in seats.scalars().all():
            granted += await reset_monthly_credits(db, clerk_user_id, int(org_row.credits_per_seat or 0), invoice.id)
        return {"action": "organization_renewal", "granted": granted}

    row = await _personal_subscription(db, invoice.subscription_id)
    if row is None:
        return {"action": "skipped", "reason": "unknown_subscription"}
    row.status = "active"
    row.current_period_start = _to_datetime(period[0]) or row.current_period_start
    row.current_period_end = _to_datetime(period[1]) or row.current_period_end
    user_result = await db.execute(select(User.clerk_id).where(User.id == row.user_id))
    subject_id = user_result.scalar_one()
    await db.commit()
    granted = await reset_monthly_credits(
        db, subject_id, plan_allotment(row.billing_frequency, row.seats), invoice.id
    )
    return {"action": "renewal", "subject_id": subject_id, "granted": granted}


async def handle_stripe_event(db: AsyncSession, event, payments) -> Dict[str, Any]:
    """Dispatch a verified event; each event id is applied at most once.

    A failed handler releases its claim and re-raises so the provider retries.
    """
    if isinstance(event, UnhandledEvent):
        logger.info("Ignoring unhandled Stripe event %s (%s)", event.id, event.type)
        return {"received": True, "handled": False, "type": event.type}

    if not await claim_event(db, event.id, event.type):
        logger.info("Duplicate Stripe event %s (%s) skipped", event.id, event.type)
        return {"received": True, "handled": False, "duplicate": True, "type": event.type}

    try:
        if isinstance(event, CheckoutSessionCompleted):
            result = await reconcile_checkout_session(db, event.data.object, payments)
        elif isinstance(event, SubscriptionCreated):
            result = await _on_subscription_created(db, event.data.object, payments)
        elif isinstance(event, SubscriptionUpdated):
            result = await _on_subscription_updated(db, event.data.object, payments)
        elif isinstance(event, SubscriptionDeleted):
            result = await _on_subscription_deleted(db, event.data.object)
        elif isinstance(event, InvoicePaymentSucceeded):
            result = await _on_invoice_paid(db, event, payments)
        elif isinstance(event, InvoicePaymentFailed):
            result = await _on_invoice_failed(db, event.data.object.subscription_id)
        else:
            raise InvalidRequest(f"No handler for {event.type}.")
    except Exception:
        logger.exception("Stripe event %s (%s) failed; releasing claim", event.id, event.type)
        await release_event(db, event.id)
        raise

    logger.info("Processed Stripe event %s (%s): %s", event.id, event.type, result.get("action"))
    return {"received": True, "handled": True, "type": event.type, **result}
