"""
Architect Studio - Subscription Manager
Generation quota per user: auto-provisioned free plan, billing-period resets,
past-due grace periods, and an atomic credit deduction.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from user_db import PLAN_LIMITS, SubscriptionPlan, SubscriptionStatus, UserSubscription

logger = logging.getLogger(__name__)

BILLING_PERIOD_DAYS = 30
NEAR_LIMIT_PCT      = 80
VERY_LOW_PCT        = 90

QUOTA_EXCEEDED = {
    "error": "Generation limit reached",
    "message": "Please upgrade your plan or purchase additional generations",
    "redirectTo": "/pricing",
}


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Reads ─────────────────────────────────────────────────────────────────────
def get_subscription(db: Session, user_id: str) -> UserSubscription:
    """Fetch the user's subscription, creating the free plan on first use."""
    sub = db.query(UserSubscription).filter(UserSubscription.user_id == user_id).first()
    if sub is not None:
        return sub
    sub = UserSubscription(
        user_id=user_id,
        plan=SubscriptionPlan.free.value,
        generations_used=0,
        generations_limit=PLAN_LIMITS[SubscriptionPlan.free],
    )
    db.add(sub)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent request provisioned it first
        db.rollback()
        return db.query(UserSubscription).filter(UserSubscription.user_id == user_id).one()
    db.refresh(sub)
    logger.info(f"[SUBSCRIPTION] provisioned free plan for {user_id}")
    return sub


def check_and_reset_billing_period(db: Session, user_id: str) -> bool:
    """Zero usage and roll the window forward 30 days once the period has ended."""
    sub = get_subscription(db, user_id)
    period_end = _utc(sub.current_period_end)
    if period_end is None or _now() <= period_end:
        return False

    new_end = period_end + timedelta(days=BILLING_PERIOD_DAYS)
    result = db.execute(
        update(UserSubscription)
        .where(
            UserSubscription.user_id == user_id,
            UserSubscription.current_period_end == sub.current_period_end,
        )
        .values(
            generations_used=0,
            current_period_start=period_end,
            current_period_end=new_end,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(sub)
    if result.rowcount:
        logger.info(f"[SUBSCRIPTION] billing period reset for {user_id}, next end {new_end.date()}")
    return bool(result.rowcount)


def credit_warning(used: int, limit: int) -> Optional[str]:
    if limit <= 0:
        return "very_low"
    pct = used / limit * 100
    if pct >= VERY_LOW_PCT:
        return "very_low"
    if pct >= NEAR_LIMIT_PCT:
        return "low"
    return None


def get_subscription_status(db: Session, user_id: str) -> dict:
    check_and_reset_billing_period(db, user_id)
    sub = get_subscription(db, user_id)
    remaining = max(sub.generations_limit - sub.generations_used, 0)
    usage_pct = (sub.generations_used / sub.generations_limit * 100) if sub.generations_limit else 100.0
    return {
        "plan": sub.plan,
        "generationsUsed": sub.generations_used,
        "generationsLimit": sub.generations_limit,
        "remaining": remaining,
        "canGenerate": can_user_generate(db, user_id),
        "usagePercentage": round(usage_pct, 1),
        "isNearLimit": usage_pct >= NEAR_LIMIT_PCT,
        "warning": credit_warning(sub.generations_used, sub.generations_limit),
        "stripeCustomerId": sub.stripe_customer_id,
        "subscriptionStatus": sub.subscription_status,
        "currentPeriodEnd": sub.current_period_end.isoformat() if sub.current_period_end else None,
    }


def can_user_generate(db: Session, user_id: str) -> bool:
    check_and_reset_billing_period(db, user_id)
    sub = get_subscription(db, user_id)
    has_credit = sub.generations_used < sub.generations_limit

    if sub.subscription_status == SubscriptionStatus.past_due.value:
        grace_end = _utc(sub.grace_period_ends_at)
        return bool(grace_end and _now() < grace_end and has_credit)

    if sub.subscription_status in (SubscriptionStatus.canceled.value, SubscriptionStatus.unpaid.value):
        return False

    return has_credit


# ── Writes ────────────────────────────────────────────────────────────────────
def deduct_credit(db: Session, user_id: str) -> bool:
    """
    Consume one generation. A single conditional UPDATE guards the limit,
    so concurrent callers can never push generations_used past the limit.
    Returns False when no credit was left.
    """
    get_subscription(db, user_id)
    result = db.execute(
        update(UserSubscription)
        .where(
            UserSubscription.user_id == user_id,
            UserSubscription.generations_used < UserSubscription.generations_limit,
        )
        .values(
            generations_used=UserSubscription.generations_used + 1,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        logger.warning(f"[SUBSCRIPTION] no credit left to deduct for {user_id}")
        return False
    return True


def set_stripe_customer_id(db: Session, user_id: str, customer_id: str) -> None:
    sub = get_subscription(db, user_id)
    sub.stripe_customer_id = customer_id
    db.commit()


# ── Route gate ────────────────────────────────────────────────────────────────
def ensure_credits(db: Session, user_id: str) -> None:
    """Raises 403 with an upgrade hint when the user has no generations left."""
    if not can_user_generate(db, user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=QUOTA_EXCEEDED)
