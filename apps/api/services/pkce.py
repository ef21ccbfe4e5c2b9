"""PKCE sign-in handshake between the editor extension and the web app."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hmac
import logging
import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.auth_session import AuthSession
from services.crypto import pkce_challenge
from services.errors import InvalidGrant, InvalidRequest, PersistenceError

logger = logging.getLogger(__name__)

MIN_CHALLENGE_LENGTH = 43
MAX_CHALLENGE_LENGTH = 128
MIN_STATE_LENGTH = 16


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _sign_in_url(state: str, redirect_uri: str) -> str:
    base_url = settings.PUBLIC_BASE_URL.rstrip("/")
    complete_url = f"{base_url}/auth/complete-vscode-auth?" + urlencode(
        {"state": state, "vscode_redirect_uri": redirect_uri}
    )
    if settings.CLERK_FRONTEND_DOMAIN:
        return f"https://{settings.CLERK_FRONTEND_DOMAIN}/sign-in?" + urlencode({"redirect_url": complete_url})
    return f"{base_url}/sign-in?" + urlencode({"redirect_url": complete_url})


async def initiate_auth_session(
    db: AsyncSession,
    *,
    code_challenge: str,
    state: str,
    redirect_uri: str,
) -> Dict[str, Any]:
    if not MIN_CHALLENGE_LENGTH <= len(code_challenge) <= MAX_CHALLENGE_LENGTH:
        raise InvalidRequest("Invalid code_challenge length.")
    if len(state) < MIN_STATE_LENGTH:
        raise InvalidRequest(f"State must be at least {MIN_STATE_LENGTH} characters.")

    expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(settings.AUTH_SESSION_TTL_SECONDS))
    session = AuthSession(
        state=state,
        code_challenge=code_challenge,
        redirect_uri=redirect_uri,
        expires_at=expires_at,
    )
    try:
        db.add(session)
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise InvalidRequest("State has already been used.") from exc

    return {"auth_url": _sign_in_url(state, redirect_uri), "expires_at": int(expires_at.timestamp())}


async def _session_by_state(db: AsyncSession, state: str) -> Optional[AuthSession]:
    result = await db.execute(
        select(AuthSession).where(AuthSession.state == state).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _discard(db: AsyncSession, state: str) -> None:
    await db.execute(delete(AuthSession).where(AuthSession.state == state))
    await db.commit()


async def authorize_auth_session(
    db: AsyncSession,
    *,
    state: str,
    subject_id: str,
    session_id: Optional[str],
) -> Dict[str, Any]:
    """Bind a signed-in user to a pending handshake and hand out a one-time code."""
    session = await _session_by_state(db, state)
    if not session:
        raise InvalidGrant("Invalid or expired state.")
    if _as_utc(session.expires_at) <= datetime.now(timezone.utc):
        await _discard(db, state)
        raise InvalidGrant("Authentication session expired.")
    if session.authorization_code:
        raise InvalidGrant("Authentication session was already authorized.")

    code = secrets.token_urlsafe(32)
    session.authorization_code = code
    session.clerk_user_id = subject_id
    session.clerk_session_id = session_id
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise PersistenceError("Failed to store authorization code.") from exc

    separator = "&" if "?" in session.redirect_uri else "?"
    return {
        "code": code,
        "state": state,
        "redirect_url": f"{session.redirect_uri}{separator}" + urlencode({"code": code, "state": state}),
    }


async def exchange_authorization_code(
    db: AsyncSession,
    *,
    code: str,
    code_verifier: str,
    state: str,
    redirect_uri: str,
) -> Dict[str, Optional[str]]:
    """Consume the handshake and return the bound subject and session ids.

    The auth session is deleted on success and on a failed PKCE check, so a
    code can be exchanged at most once.
    """
    session = await _session_by_state(db, state)
    if not session or not session.authorization_code:
        raise InvalidGrant("Invalid or expired state.")
    if _as_utc(session.expires_at) <= datetime.now(timezone.utc):
        await _discard(db, state)
        raise InvalidGrant("Authentication session expired.")
    if session.redirect_uri != redirect_uri:
        raise InvalidGrant("Redirect URI mismatch.")
    if not hmac.compare_digest(session.authorization_code, code):
        raise InvalidGrant("Invalid authorization code.")
    if not hmac.compare_digest(pkce_challenge(code_verifier), session.code_challenge):
        logger.warning("PKCE verification failed for state %s", state)
        await _discard(db, state)
        raise InvalidGrant("PKCE verification failed.")

    subject_id = session.clerk_user_id
    session_id = session.clerk_session_id
    await _discard(db, state)
    return {"subject_id": subject_id, "session_id": session_id}
