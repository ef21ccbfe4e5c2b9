"""Organization model."""

import uuid

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Organization(Base):
    """Organization mirrored from the identity provider."""

    __tablename__ = "organizations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    clerk_org_id = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)
    stripe_customer_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    subscriptions = relationship("OrganizationSubscription", back_populates="organization", cascade="all, delete-orphan")
    seats = relationship("OrganizationSeat", back_populates="organization", cascade="all, delete-orphan")
