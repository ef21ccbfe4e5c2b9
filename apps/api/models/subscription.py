"""Personal subscription model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Subscription(Base):
    """Mirror of a payments-provider subscription owned by a single user."""

    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    stripe_subscription_id = Column(String, nullable=False, unique=True, index=True)
    plan_type = Column(String, nullable=False)
    billing_frequency = Column(String, nullable=False, default="monthly")
    seats = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=False, default="incomplete", index=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")
