"""WebhookEvent model, the idempotency ledger for provider callbacks."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class WebhookEvent(Base):
    """One row per provider event id that has been claimed for processing."""

    __tablename__ = "webhook_events"

    event_id = Column(String, primary_key=True)
    provider = Column(String, nullable=False, default="stripe")
    event_type = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), server_default=func.now())
