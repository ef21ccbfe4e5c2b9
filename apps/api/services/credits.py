"""Credit ledger read helpers and usage accounting."""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.user import User
from services.errors import DuplicateCreditGrant, UserNotFound
from services.procedures import deduct_credits, grant_credits


async def get_user_by_clerk_id(clerk_id: str, db: AsyncSession) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.clerk_id == clerk_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_user(clerk_id: str, db: AsyncSession) -> User:
    user = await get_user_by_clerk_id(clerk_id, db)
    if not user:
        raise UserNotFound("User not found. Initialize the account first.")
    return user


async def get_credit_balance(clerk_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(User.credits).where(User.clerk_id == clerk_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise UserNotFound("User not found.")
    return int(balance)


async def has_credit_reference(clerk_id: str, reference_id: str, db: AsyncSession) -> bool:
    """True when a positive ledger entry already carries this reference id.

    A fast path for retried callers; the unique grant index is the guarantee.
    """
    result = await db.execute(
        select(CreditTransaction.id)
        .join(User, User.id == CreditTransaction.user_id)
        .where(
            User.clerk_id == clerk_id,
            CreditTransaction.reference_id == reference_id,
            CreditTransaction.amount > 0,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def grant_once(
    clerk_id: str,
    db: AsyncSession,
    *,
    amount: int,
    description: str,
    reference_id: str,
    kind: str = "grant",
) -> Dict[str, Any]:
    """Grant credits unless this reference id has already been credited.

    Concurrent callers that both pass the lookup are settled by the ledger's
    unique (user_id, reference_id) index; the loser reports a duplicate.
    """
    if await has_credit_reference(clerk_id, reference_id, db):
        return {"granted": 0, "duplicate": True, "balance_after": await get_credit_balance(clerk_id, db)}
    try:
        balance = await grant_credits(db, clerk_id, amount, description, reference_id, kind=kind)
    except DuplicateCreditGrant:
        return {"granted": 0, "duplicate": True, "balance_after": await get_credit_balance(clerk_id, db)}
    return {"granted": int(amount), "duplicate": False, "balance_after": balance}


async def consume_credits(
    clerk_id: str,
    db: AsyncSession,
    *,
    cost: int,
    reason: str,
    reference_id: Optional[str] = None,
) -> Dict[str, Any]:
    debit_cost = max(int(cost), 0)
    if debit_cost == 0:
        return {"charged": 0, "balance_after": await get_credit_balance(clerk_id, db)}
    balance = await deduct_credits(db, clerk_id, debit_cost, reason, reference_id)
    return {"charged": debit_cost, "balance_after": balance}


async def get_credit_summary(clerk_id: str, db: AsyncSession, *, limit: int = 30) -> Dict[str, Any]:
    user = await require_user(clerk_id, db)
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user.id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(limit)
    )
    entries = result.scalars().all()
    return {
        "balance": int(user.credits or 0),
        "plan_type": user.plan_type,
        "allotments": {
            "starter": max(int(settings.STARTER_CREDITS), 0),
            "monthly_per_seat": int(settings.MONTHLY_CREDITS_PER_SEAT),
            "yearly_per_seat": int(settings.YEARLY_CREDITS_PER_SEAT),
        },
        "recent_transactions": [
            {
                "id": entry.id,
                "amount": entry.amount,
                "transaction_type": entry.transaction_type,
                "description": entry.description,
                "reference_id": entry.reference_id,
                "balance_after": entry.balance_after,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
