"""OrganizationSeat model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class OrganizationSeat(Base):
    """One paid slot in an organization subscription held by one user."""

    __tablename__ = "organization_seats"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    organization_subscription_id = Column(
        String, ForeignKey("organization_subscriptions.id"), nullable=True, index=True
    )
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    clerk_org_id = Column(String, nullable=False, index=True)
    clerk_user_id = Column(String, nullable=False, index=True)
    role = Column(String, nullable=False, default="member")
    status = Column(String, nullable=False, default="active", index=True)
    assigned_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    organization = relationship("Organization", back_populates="seats")
    subscription = relationship("OrganizationSubscription", back_populates="seats")
    user = relationship("User", back_populates="seats")
