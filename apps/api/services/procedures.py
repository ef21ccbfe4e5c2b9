"""Atomic data-layer procedures.

These coroutines are the contract between handlers and the database. Every
read-modify-write is a single conditional UPDATE, and the balance change and
its ledger row are committed together, so two concurrent requests for the same
user or organization can never lose an update.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.organization import Organization
from models.organization_seat import OrganizationSeat
from models.organization_subscription import OrganizationSubscription
from models.user import User
from services.errors import (
    DuplicateCreditGrant,
    InsufficientCredits,
    InvalidRequest,
    NotFound,
    OrganizationNotFound,
    PersistenceError,
    SeatAlreadyAssigned,
    SeatLimitReached,
    ServiceError,
    SubscriptionNotFound,
    UserNotFound,
)
from services.plans import ACTIVE_STATUSES, BASE_PLAN

logger = logging.getLogger(__name__)

TRANSACTION_KINDS = ("grant", "usage", "refund", "bonus", "conversion")


async def _user_row(db: AsyncSession, clerk_id: str, *, lock: bool = False) -> User:
    stmt = select(User).where(User.clerk_id == clerk_id).execution_options(populate_existing=True)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()
    if not user:
        raise UserNotFound(f"No user for subject {clerk_id}.")
    return user


async def _balance(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(select(User.credits).where(User.id == user_id))
    return int(result.scalar_one() or 0)


async def _rollback_and_raise(db: AsyncSession, operation: str, exc: Exception) -> None:
    await db.rollback()
    if isinstance(exc, ServiceError):
        raise exc
    logger.error("Procedure %s failed: %s", operation, exc)
    raise PersistenceError(f"{operation} failed.") from exc


async def upsert_user(
    db: AsyncSession,
    *,
    clerk_id: str,
    email: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    avatar_url: Optional[str] = None,
    plan_type: str = BASE_PLAN,
) -> User:
    """Create the user on first sight, otherwise refresh profile fields.

    A new starter account receives the starter credit grant. An existing
    account keeps its plan and balance.
    """
    for attempt in range(2):
        try:
            result = await db.execute(
                select(User).where(User.clerk_id == clerk_id).execution_options(populate_existing=True)
            )
            user = result.scalar_one_or_none()
            if user:
                user.email = email or user.email
                if first_name is not None:
                    user.first_name = first_name
                if last_name is not None:
                    user.last_name = last_name
                if avatar_url is not None:
                    user.avatar_url = avatar_url
                await db.commit()
                return user

            starter_credits = max(int(settings.STARTER_CREDITS), 0) if plan_type == BASE_PLAN else 0
            user = User(
                clerk_id=clerk_id,
                email=email,
                first_name=first_name,
                last_name=last_name,
                avatar_url=avatar_url,
                plan_type=plan_type,
                credits=starter_credits,
            )
            db.add(user)
            await db.flush()
            if starter_credits:
                db.add(
                    CreditTransaction(
                        user_id=user.id,
                        amount=starter_credits,
                        transaction_type="grant",
                        description="Starter plan credits",
                        balance_after=starter_credits,
                    )
                )
            await db.commit()
            return user
        except IntegrityError as exc:
            # Lost the insert race to a concurrent request; the second pass updates its row.
            await db.rollback()
            if attempt:
                raise PersistenceError("upsert_user failed.") from exc
        except SQLAlchemyError as exc:
            await _rollback_and_raise(db, "upsert_user", exc)
    raise PersistenceError("upsert_user failed.")


async def grant_credits(
    db: AsyncSession,
    clerk_id: str,
    amount: int,
    description: str,
    reference_id: Optional[str] = None,
    *,
    kind: str = "grant",
) -> int:
    """Add credits and append the ledger row. Returns the new balance.

    Raises DuplicateCreditGrant when this user was already credited for
    ``reference_id``; the balance is left untouched.
    """
    amount = int(amount)
    if amount <= 0:
        raise InvalidRequest("Credit grant amount must be greater than 0.")
    if kind not in TRANSACTION_KINDS:
        raise InvalidRequest(f"Unknown credit transaction kind: {kind}")
    try:
        user = await _user_row(db, clerk_id)
        await db.execute(update(User).where(User.id == user.id).values(credits=User.credits + amount))
        balance = await _balance(db, user.id)
        db.add(
            CreditTransaction(
                user_id=user.id,
                amount=amount,
                transaction_type=kind,
                description=description,
                reference_id=reference_id,
                balance_after=balance,
            )
        )
        await db.commit()
        return balance
    except IntegrityError as exc:
        await db.rollback()
        if reference_id is None:
            raise PersistenceError("grant_credits failed.") from exc
        raise DuplicateCreditGrant(f"Credits for {reference_id} were already granted.") from exc
    except (ServiceError, SQLAlchemyError) as exc:
        await _rollback_and_raise(db, "grant_credits", exc)
    raise PersistenceError("grant_credits failed.")


async def deduct_credits(
    db: AsyncSession,
    clerk_id: str,
    amount: int,
    description: str,
    reference_id: Optional[str] = None,
    *,
    kind: str = "usage",
) -> int:
    """Remove credits only when the balance covers them. Returns the new balance."""
    amount = int(amount)
    if amount <= 0:
        raise InvalidRequest("Credit deduction amount must be greater than 0.")
    try:
        user = await _user_row(db, clerk_id)
        result = await db.execute(
            update(User)
            .where(User.id == user.id, User.credits >= amount)
            .values(credits=User.credits - amount)
        )
        if result.rowcount == 0:
            available = await _balance(db, user.id)
            raise InsufficientCredits(
                f"Insufficient credits. Required: {amount}, available: {available}.",
                extra={"required": amount, "available": available},
            )
        balance = await _balance(db, user.id)
        db.add(
            CreditTransaction(
                user_id=user.id,
                amount=-amount,
                transaction_type=kind,
                description=description,
                reference_id=reference_id,
                balance_after=balance,
            )
        )
        await db.commit()
        return balance
    except (ServiceError, SQLAlchemyError) as exc:
        await _rollback_and_raise(db, "deduct_credits", exc)
    raise PersistenceError("deduct_credits failed.")


async def reset_monthly_credits(
    db: AsyncSession,
    clerk_id: str,
    plan_credits: int,
    reference_id: Optional[str] = None,
) -> int:
    """Raise the balance to the plan allotment for a new period.

    Never lowers a balance. Returns the number of credits granted.
    """
    plan_credits = max(int(plan_credits), 0)
    try:
        user = await _user_row(db, clerk_id, lock=True)
        previous = int(user.credits or 0)
        result = await db.execute(
            update(User).where(User.id == user.id, User.credits < plan_credits).values(credits=plan_credits)
        )
        if result.rowcount == 0:
            await db.commit()
            return 0
        granted = plan_credits - previous
        db.add(
            CreditTransaction(
                user_id=user.id,
                amount=granted,
                transaction_type="grant",
                description="Monthly credit reset",
                reference_id=reference_id,
                balance_after=plan_credits,
            )
        )
        await db.commit()
        return granted
    except IntegrityError as exc:
        await db.rollback()
        if reference_id is None:
            raise PersistenceError("reset_monthly_credits failed.") from exc
        # This period's reset for reference_id has already been applied.
        return 0
    except (ServiceError, SQLAlchemyError) as exc:
        await _rollback_and_raise(db, "reset_monthly_credits", exc)
    raise PersistenceError("reset_monthly_credits failed.")


async def upsert_organization(
    db: AsyncSession,
    clerk_org_id: str,
    *,
    name: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
) -> Organization:
    for attempt in range(2):
        try:
            result = await db.execute(
                select(Organization)
                .where(Organization.clerk_org_id == clerk_org_id)
                .execution_options(populate_existing=True)
            )
            organization = result.scalar_one_or_none()
            if organization is None:
                organization = Organization(clerk_org_id=clerk_org_id, name=name, stripe_customer_id=stripe_customer_id)
                db.add(organization)
            else:
                if name:
                    organization.name = name
                if stripe_customer_id:
                    organization.stripe_customer_id = stripe_customer_id
            await db.commit()
            return organization
        except IntegrityError as exc:
            await db.rollback()
            if attempt:
                raise PersistenceError("upsert_organization failed.") from exc
        except SQLAlchemyError as exc:
            await _rollback_and_raise(db, "upsert_organization", exc)
    raise PersistenceError("upsert_organization failed.")


async def _active_org_subscription(db: AsyncSession, organization_id: str) -> OrganizationSubscription:
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
    subscription = result.scalar_one_or_none()
    if not subscription:
        raise SubscriptionNotFound("Organization has no active subscription.")
    return subscription


async def assign_organization_seat_with_credits(
    db: AsyncSession,
    clerk_org_id: str,
    clerk_user_id: str,
    *,
    role: str = "member",
    assigned_by: Optional[str] = None,
) -> OrganizationSeat:
    """Occupy one seat and grant the per-seat allotment to the assignee."""
    try:
        org_result = await db.execute(select(Organization).where(Organization.clerk_org_id == clerk_org_id))
        organization = org_result.scalar_one_or_none()
        if not organization:
            raise OrganizationNotFound(f"Unknown organization {clerk_org_id}.")
        subscription = await _active_org_subscription(db, organization.id)
        user = await _user_row(db, clerk_user_id)

        existing = await db.execute(
            select(OrganizationSeat.id).where(
                OrganizationSeat.organization_id == organization.id,
                OrganizationSeat.user_id == user.id,
                OrganizationSeat.status == "active",
            )
        )
        if existing.scalar_one_or_none():
            raise SeatAlreadyAssigned("User already has an active seat in this organization.")

        claimed = await db.execute(
            update(OrganizationSubscription)
            .where(
                OrganizationSubscription.id == subscription.id,
                OrganizationSubscription.seats_used < OrganizationSubscription.seats_total,
            )
            .values(seats_used=OrganizationSubscription.seats_used + 1)
        )
        if claimed.rowcount == 0:
            raise SeatLimitReached("No available seats. Upgrade the plan to add more seats.")

        seat = OrganizationSeat(
            organization_id=organization.id,
            organization_subscription_id=subscription.id,
            user_id=user.id,
            clerk_org_id=clerk_org_id,
            clerk_user_id=clerk_user_id,
            role=role,
            status="active",
            assigned_by=assigned_by,
        )
        db.add(seat)
        await db.flush()

        seat_credits = int(subscription.credits_per_seat or 0)
        if seat_credits > 0:
            await db.execute(update(User).where(User.id == user.id).values(credits=User.credits + seat_credits))
            db.add(
                CreditTransaction(
                    user_id=user.id,
                    amount=seat_credits,
                    transaction_type="grant",
                    description=f"Seat credits for organization {organization.name or clerk_org_id}",
                    reference_id=seat.id,
                    balance_after=await _balance(db, user.id),
                )
            )
        await db.commit()
        return seat
    except (ServiceError, SQLAlchemyError) as exc:
        await _rollback_and_raise(db, "assign_organization_seat_with_credits", exc)
    raise PersistenceError("assign_organization_seat_with_credits failed.")


async def remove_organization_seat_with_credits(
    db: AsyncSession,
    clerk_org_id: str,
    clerk_user_id: str,
) -> Dict[str, Any]:
    """Revoke the seat and take back its allotment, truncated at a zero balance."""
    try:
        seat_result = await db.execute(
            select(OrganizationSeat)
            .where(
                OrganizationSeat.clerk_org_id == clerk_org_id,
                OrganizationSeat.clerk_user_id == clerk_user_id,
                OrganizationSeat.status == "active",
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        seat = seat_result.scalar_one_or_none()
        if not seat:
            raise NotFound("No active seat for this user in the organization.")

        revoked = await db.execute(
            update(OrganizationSeat)
            .where(OrganizationSeat.id == seat.id, OrganizationSeat.status == "active")
            .values(status="revoked", revoked_at=datetime.now(timezone.utc))
        )
        if revoked.rowcount == 0:
            raise NotFound("Seat was already revoked.")

        seat_credits = 0
        if seat.organization_subscription_id:
            sub_result = await db.execute(
                select(OrganizationSubscription.credits_per_seat).where(
                    OrganizationSubscription.id == seat.organization_subscription_id
                )
            )
            seat_credits = int(sub_result.scalar_one_or_none() or 0)
            await db.execute(
                update(OrganizationSubscription)
                .where(
                    OrganizationSubscription.id == seat.organization_subscription_id,
                    OrganizationSubscription.seats_used > 0,
                )
                .values(seats_used=OrganizationSubscription.seats_used - 1)
            )

        removed = 0
        previous_result = await db.execute(select(User.credits).where(User.id == seat.user_id).with_for_update())
        previous = int(previous_result.scalar_one() or 0)
        if seat_credits > 0 and previous > 0:
            await db.execute(
                update(User)
                .where(User.id == seat.user_id)
                .values(credits=case((User.credits > seat_credits, User.credits - seat_credits), else_=0))
            )
            balance = await _balance(db, seat.user_id)
            removed = previous - balance
            db.add(
                CreditTransaction(
                    user_id=seat.user_id,
                    amount=-removed,
                    transaction_type="usage",
                    description=f"Seat removed from organization {clerk_org_id}",
                    reference_id=seat.id,
                    balance_after=balance,
                )
            )
        else:
            balance = previous
        await db.commit()
        return {"seat_id": seat.id, "credits_removed": removed, "balance_after": balance}
    except (ServiceError, SQLAlchemyError) as exc:
        await _rollback_and_raise(db, "remove_organization_seat_with_credits", exc)
    raise PersistenceError("remove_organization_seat_with_credits failed.")
