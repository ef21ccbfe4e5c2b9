"""Access/refresh credential issuance for the editor extension.

Lifecycle of an issued credential: issued -> refreshed* -> revoked | expired.
Only the SHA-256 hash of each access credential is persisted.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Any, Dict, List, Optional
import uuid

from jose import JWTError, jwt
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import require_jwt_secret, settings
from models.extension_token import ExtensionToken
from models.user import User
from services.crypto import encrypt_value, hash_token
from services.errors import InvalidCredential, InvalidGrant, PersistenceError, TokenNotFound, UserNotFound

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
TOKEN_SCOPE = "vscode:auth"

ORG_CLAIM_KEYS = (
    "clerk_org_id",
    "organization_id",
    "organization_name",
    "stripe_customer_id",
    "organization_subscription_id",
    "seat_id",
    "seat_role",
    "org_role",
)


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_at: int
    expires_in: int
    session_id: str
    token_id: str
    pool: str

    def to_response(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "expires_at": self.expires_at,
            "session_id": self.session_id,
            "token_id": self.token_id,
            "pool": self.pool,
        }


def _now() -> int:
    return int(time.time())


def _to_datetime(epoch: int) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def _encode(claims: Dict[str, Any]) -> str:
    return jwt.encode(claims, require_jwt_secret(), algorithm=settings.JWT_ALGORITHM)


def decode_extension_token(token: str, expected_type: str = ACCESS_TOKEN_TYPE) -> Dict[str, Any]:
    """Check signature, issuer, audience and expiry of an extension credential.

    A credential whose ``exp`` equals the current second is already expired.
    """
    is_access = expected_type == ACCESS_TOKEN_TYPE
    try:
        payload = jwt.decode(
            token,
            require_jwt_secret(),
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE if is_access else None,
            issuer=settings.JWT_ISSUER,
            options={"verify_exp": False, "verify_aud": is_access},
        )
    except JWTError as exc:
        raise InvalidCredential("Invalid extension token.") from exc

    if str(payload.get("type", "")) != expected_type:
        raise InvalidCredential(f"Token is not a {expected_type} token.")
    exp = payload.get("exp")
    if exp is None or int(exp) <= _now():
        raise InvalidCredential("Extension token has expired.")
    if not str(payload.get("sub", "")).strip():
        raise InvalidCredential("Extension token missing subject.")
    return payload


async def _load_user(db: AsyncSession, clerk_id: str) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.clerk_id == clerk_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def issue_tokens(
    db: AsyncSession,
    subject_id: str,
    *,
    session_id: Optional[str] = None,
    org_claims: Optional[Dict[str, Any]] = None,
    label: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    refresh_count: int = 0,
) -> IssuedTokens:
    """Mint an access/refresh pair for a verified subject and record the access hash."""
    user = await _load_user(db, subject_id)
    if not user:
        raise UserNotFound("User not found. Initialize the account first.")

    session_id = session_id or str(uuid.uuid4())
    iat = _now()
    access_exp = iat + int(settings.ACCESS_TOKEN_TTL_SECONDS)
    refresh_exp = iat + int(settings.REFRESH_TOKEN_TTL_SECONDS)
    org_claims = org_claims or {}
    pool = "organization" if org_claims.get("pool") == "organization" else "personal"

    access_claims: Dict[str, Any] = {
        "sub": user.clerk_id,
        "user_id": user.id,
        "email": user.email,
        "plan_type": user.plan_type,
        "credits": int(user.credits or 0),
        "session_id": session_id,
        "type": ACCESS_TOKEN_TYPE,
        "scope": TOKEN_SCOPE,
        "pool": pool,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": iat,
        "exp": access_exp,
        "jti": str(uuid.uuid4()),
    }
    for key in ORG_CLAIM_KEYS:
        access_claims[key] = org_claims.get(key) if pool == "organization" else None

    refresh_claims: Dict[str, Any] = {
        "sub": user.clerk_id,
        "session_id": session_id,
        "type": REFRESH_TOKEN_TYPE,
        "iss": settings.JWT_ISSUER,
        "iat": iat,
        "exp": refresh_exp,
        "jti": str(uuid.uuid4()),
    }
    if pool == "organization" and org_claims.get("clerk_org_id"):
        refresh_claims["clerk_org_id"] = org_claims["clerk_org_id"]

    access_token = _encode(access_claims)
    refresh_token = _encode(refresh_claims)

    record = ExtensionToken(
        user_id=user.id,
        token_hash=hash_token(access_token),
        session_id=session_id,
        label=label,
        device_info_encrypted=encrypt_value(user_agent),
        ip_address_encrypted=encrypt_value(ip_address),
        refresh_count=refresh_count,
        expires_at=_to_datetime(access_exp),
    )
    try:
        db.add(record)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Failed to persist extension token hash for %s: %s", subject_id, exc)
        raise PersistenceError("Failed to record issued token.") from exc

    return IssuedTokens(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=access_exp,
        expires_in=access_exp - iat,
        session_id=session_id,
        token_id=record.id,
        pool=pool,
    )


async def refresh_tokens(
    db: AsyncSession,
    refresh_token: str,
    *,
    previous_access_token: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    clerk_client=None,
) -> IssuedTokens:
    """Rotate a refresh credential into a new pair bound to the same session id."""
    try:
        payload = decode_extension_token(refresh_token, REFRESH_TOKEN_TYPE)
    except InvalidCredential as exc:
        raise InvalidGrant(exc.message) from exc

    subject_id = str(payload["sub"])
    session_id = str(payload.get("session_id") or "")
    if not session_id:
        raise InvalidGrant("Refresh token missing session id.")

    user = await _load_user(db, subject_id)
    if not user:
        raise InvalidGrant("Refresh token subject is unknown.")

    label = None
    if previous_access_token:
        prior_hash = hash_token(previous_access_token)
        prior = await db.execute(
            select(ExtensionToken).where(
                ExtensionToken.token_hash == prior_hash,
                ExtensionToken.user_id == user.id,
            )
        )
        prior_record = prior.scalar_one_or_none()
        if prior_record:
            label = prior_record.label
            await db.execute(
                update(ExtensionToken)
                .where(ExtensionToken.id == prior_record.id, ExtensionToken.revoked_at.is_(None))
                .values(revoked_at=datetime.now(timezone.utc))
            )

    count_result = await db.execute(
        select(func.count(ExtensionToken.id)).where(
            ExtensionToken.user_id == user.id,
            ExtensionToken.session_id == session_id,
        )
    )
    refresh_count = int(count_result.scalar_one() or 0)

    org_claims = None
    clerk_org_id = payload.get("clerk_org_id")
    if clerk_org_id:
        from services.organizations import resolve_org_attribution_claims

        org_claims = await resolve_org_attribution_claims(
            db, subject_id, clerk_org_id, clerk_claims=None, clerk_client=clerk_client
        )

    return await issue_tokens(
        db,
        subject_id,
        session_id=session_id,
        org_claims=org_claims,
        label=label,
        ip_address=ip_address,
        user_agent=user_agent,
        refresh_count=refresh_count,
    )


async def revoke_token(db: AsyncSession, access_token: str) -> Dict[str, Any]:
    """Mark the record for this access credential revoked.

    Raises TokenNotFound when no matching non-revoked record exists.
    """
    payload = decode_extension_token(access_token, ACCESS_TOKEN_TYPE)
    user = await _load_user(db, str(payload["sub"]))
    if not user:
        raise TokenNotFound("Token not found or already revoked.")

    token_hash = hash_token(access_token)
    result = await db.execute(
        update(ExtensionToken)
        .where(
            ExtensionToken.token_hash == token_hash,
            ExtensionToken.user_id == user.id,
            ExtensionToken.revoked_at.is_(None),
        )
        .values(revoked_at=datetime.now(timezone.utc))
    )
    if result.rowcount == 0:
        await db.rollback()
        raise TokenNotFound("Token not found or already revoked.")
    await db.commit()
    return {"subject_id": user.clerk_id, "session_id": payload.get("session_id")}


async def validate_token(db: AsyncSession, access_token: str) -> Dict[str, Any]:
    """Signature and expiry check plus the revocation lookup; returns the claims."""
    payload = decode_extension_token(access_token, ACCESS_TOKEN_TYPE)
    result = await db.execute(
        select(ExtensionToken.revoked_at).where(ExtensionToken.token_hash == hash_token(access_token))
    )
    row = result.one_or_none()
    if row is None:
        raise InvalidCredential("Token is not recognized.")
    if row[0] is not None:
        raise InvalidCredential("Token has been revoked.")
    return payload


async def list_active_tokens(db: AsyncSession, subject_id: str) -> List[Dict[str, Any]]:
    user = await _load_user(db, subject_id)
    if not user:
        raise UserNotFound("User not found.")
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(ExtensionToken)
        .where(ExtensionToken.user_id == user.id, ExtensionToken.revoked_at.is_(None))
        .order_by(ExtensionToken.created_at.desc())
    )
    tokens = []
    for record in result.scalars().all():
        expires_at = record.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= now:
            continue
        tokens.append(
            {
                "id": record.id,
                "label": record.label,
                "session_id": record.session_id,
                "refresh_count": record.refresh_count,
                "created_at": record.created_at.isoformat() if record.created_at else None,
                "expires_at": expires_at.isoformat(),
            }
        )
    return tokens
