"""ExtensionToken model for issued editor-extension credentials."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ExtensionToken(Base):
    """Hash of an issued access credential; the plaintext is never stored."""

    __tablename__ = "extension_tokens"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    token_hash = Column(String, nullable=False, unique=True, index=True)
    session_id = Column(String, nullable=False, index=True)
    label = Column(String, nullable=True)
    device_info_encrypted = Column(Text, nullable=True)
    ip_address_encrypted = Column(Text, nullable=True)
    refresh_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="extension_tokens")
