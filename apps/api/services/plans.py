"""Plan tiers, billing frequencies and credit allotments."""

from __future__ import annotations

from config import settings

PAID_PLAN_TYPES = ("pro", "teams")
BASE_PLAN = "starter"
SUBSCRIPTION_STATUSES = ("active", "trialing", "past_due", "canceled", "incomplete")
ACTIVE_STATUSES = ("active", "trialing")
# A failed payment does not suspend access.
ENTITLED_STATUSES = ACTIVE_STATUSES + ("past_due",)

ORG_ADMIN_ROLE = "org:admin"
ORG_MEMBER_ROLE = "org:member"


def normalize_frequency(value: str | None) -> str:
    text = str(value or "").strip().lower()
    if text in {"year", "yearly", "annual", "annually"}:
        return "yearly"
    return "monthly"


def normalize_status(value: str | None) -> str:
    """Collapse provider statuses onto the five tracked states."""
    text = str(value or "").strip().lower()
    if text in SUBSCRIPTION_STATUSES:
        return text
    if text == "unpaid":
        return "past_due"
    if text in {"incomplete_expired", "ended"}:
        return "canceled"
    return "incomplete"


def credits_per_seat(billing_frequency: str) -> int:
    """Flat per-seat grant for one billing period; yearly is not prorated."""
    if normalize_frequency(billing_frequency) == "yearly":
        return int(settings.YEARLY_CREDITS_PER_SEAT)
    return int(settings.MONTHLY_CREDITS_PER_SEAT)


def plan_allotment(billing_frequency: str, seats: int = 1) -> int:
    return credits_per_seat(billing_frequency) * max(int(seats or 1), 1)


def trial_allotment(seats: int = 1) -> int:
    return int(settings.TRIAL_CREDITS) * max(int(seats or 1), 1)


def resolve_price_id(plan_type: str, billing_frequency: str) -> str | None:
    prices = settings.STRIPE_PRICE_IDS.get(plan_type) or {}
    return prices.get(normalize_frequency(billing_frequency))
