"""AuthSession model holding PKCE handshake state for the editor extension."""

import uuid

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class AuthSession(Base):
    """Pending sign-in started by the extension, bound to a user once authorized."""

    __tablename__ = "auth_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    state = Column(String, nullable=False, unique=True, index=True)
    code_challenge = Column(String, nullable=False)
    redirect_uri = Column(String, nullable=False)
    authorization_code = Column(String, nullable=True, unique=True, index=True)
    clerk_user_id = Column(String, nullable=True)
    clerk_session_id = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
