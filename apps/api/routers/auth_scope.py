"""Authentication dependencies for identity and extension bearers."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.clerk import get_clerk_client
from services.errors import InvalidCredential
from services.extension_tokens import decode_extension_token, validate_token
from services.identity import IdentityClaims, verify_identity_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class ExtensionContext:
    subject_id: str
    session_id: Optional[str]
    token: str
    claims: Dict[str, Any] = field(default_factory=dict)


def _bearer_token(credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    if not credentials or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise InvalidCredential("Missing Bearer token.")
    return credentials.credentials


def identity_client():
    """Identity provider API client, or None when no secret key is configured."""
    if not settings.CLERK_SECRET_KEY.strip():
        return None
    return get_clerk_client()


async def get_identity(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> IdentityClaims:
    """Resolve the signed-in user from an identity-provider session token."""
    token = _bearer_token(credentials)
    return await verify_identity_token(token)


async def get_extension_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> ExtensionContext:
    """Resolve the caller from an extension access token (signature and expiry only).

    Only revocation uses this; every other route goes through the record lookup.
    """
    token = _bearer_token(credentials)
    payload = decode_extension_token(token)
    return ExtensionContext(
        subject_id=str(payload["sub"]),
        session_id=payload.get("session_id"),
        token=token,
        claims=payload,
    )


async def get_active_extension_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    db: AsyncSession = Depends(get_db),
) -> ExtensionContext:
    """Resolve the caller from an extension access token that is on record and not revoked."""
    token = _bearer_token(credentials)
    payload = await validate_token(db, token)
    return ExtensionContext(
        subject_id=str(payload["sub"]),
        session_id=payload.get("session_id"),
        token=token,
        claims=payload,
    )
