"""OrganizationSubscription model."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class OrganizationSubscription(Base):
    """Team subscription with a seat-derived credit pool."""

    __tablename__ = "organization_subscriptions"
    __table_args__ = (CheckConstraint("seats_used <= seats_total", name="ck_org_subscriptions_seat_capacity"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    stripe_subscription_id = Column(String, nullable=False, unique=True, index=True)
    plan_type = Column(String, nullable=False, default="teams")
    billing_frequency = Column(String, nullable=False, default="monthly")
    seats_total = Column(Integer, nullable=False, default=1)
    seats_used = Column(Integer, nullable=False, default=0)
    credits_per_seat = Column(Integer, nullable=False, default=0)
    total_credits = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="active", index=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    organization = relationship("Organization", back_populates="subscriptions")
    seats = relationship("OrganizationSeat", back_populates="subscription")
