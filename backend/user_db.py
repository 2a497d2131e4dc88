"""
Architect Studio - User DB Models
SQLAlchemy models for users and their generation subscriptions.
"""

import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionPlan(str, enum.Enum):
    free        = "free"
    starter     = "starter"
    pro         = "pro"
    studio      = "studio"
    pay_per_use = "pay_per_use"


class SubscriptionStatus(str, enum.Enum):
    active   = "active"
    past_due = "past_due"
    canceled = "canceled"
    unpaid   = "unpaid"
    trialing = "trialing"


# Generations per billing period
PLAN_LIMITS = {
    SubscriptionPlan.free:        2,
    SubscriptionPlan.starter:     5,
    SubscriptionPlan.pro:         20,
    SubscriptionPlan.studio:      60,
    SubscriptionPlan.pay_per_use: 0,
}


class User(Base):
    """Registered users (email/password or Google OAuth)."""
    __tablename__ = "users"

    id                = Column(String(64), primary_key=True, default=lambda: uuid.uuid4().hex)
    email             = Column(String(255), unique=True, index=True, nullable=False)
    password_hash     = Column(String(255), nullable=True)   # None for Google-only accounts
    first_name        = Column(String(255), nullable=True)
    last_name         = Column(String(255), nullable=True)
    profile_image_url = Column(String(1024), nullable=True)
    created_at        = Column(DateTime(timezone=True), default=_utcnow)
    updated_at        = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "profileImageUrl": self.profile_image_url,
        }


class UserSubscription(Base):
    """Per-user generation quota and Stripe linkage."""
    __tablename__ = "user_subscriptions"

    id                     = Column(Integer, primary_key=True, index=True)
    user_id                = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"),
                                    unique=True, nullable=False, index=True)
    plan                   = Column(String(32), default=SubscriptionPlan.free.value, nullable=False)
    stripe_customer_id     = Column(String(128), nullable=True, index=True)
    stripe_subscription_id = Column(String(128), nullable=True)
    generations_used       = Column(Integer, default=0, nullable=False)
    generations_limit      = Column(Integer, default=PLAN_LIMITS[SubscriptionPlan.free], nullable=False)
    current_period_start   = Column(DateTime(timezone=True), nullable=True)
    current_period_end     = Column(DateTime(timezone=True), nullable=True)
    subscription_status    = Column(String(32), nullable=True)
    grace_period_ends_at   = Column(DateTime(timezone=True), nullable=True)
    created_at             = Column(DateTime(timezone=True), default=_utcnow)
    updated_at             = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
