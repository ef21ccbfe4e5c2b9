"""Identity provider session-token verification."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings
from services.errors import ConfigurationError, InvalidCredential

IDENTITY_ALGORITHMS = ["RS256"]


@dataclass
class IdentityClaims:
    subject_id: str
    session_id: Optional[str]
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def email(self) -> Optional[str]:
        value = self.claims.get("email")
        return str(value) if value else None

    @property
    def org_id(self) -> Optional[str]:
        org = self.claims.get("o")
        if isinstance(org, dict) and org.get("id"):
            return str(org["id"])
        value = self.claims.get("org_id")
        return str(value) if value else None

    def org_role(self, org_id: str) -> Optional[str]:
        """Role for ``org_id`` when the session claims carry it."""
        organizations = self.claims.get("organizations")
        if isinstance(organizations, dict) and org_id in organizations:
            entry = organizations[org_id]
            if isinstance(entry, dict):
                return entry.get("role") or "org:member"
            return str(entry or "org:member")
        if self.org_id == org_id:
            org = self.claims.get("o")
            if isinstance(org, dict) and org.get("rol"):
                role = str(org["rol"])
                return role if role.startswith("org:") else f"org:{role}"
            return self.claims.get("org_role") or "org:member"
        return None


def _now() -> int:
    return int(time.time())


async def _verification_key(clerk_client=None) -> Any:
    if settings.CLERK_JWT_KEY.strip():
        return settings.CLERK_JWT_KEY.strip()
    if not settings.CLERK_SECRET_KEY.strip():
        raise ConfigurationError("Neither CLERK_JWT_KEY nor CLERK_SECRET_KEY is configured.")
    if clerk_client is None:
        from services.clerk import get_clerk_client

        clerk_client = get_clerk_client()
    return await clerk_client.get_jwks()


async def verify_identity_token(token: str, clerk_client=None) -> IdentityClaims:
    """Verify an identity-provider session token and extract subject and session ids.

    Raises InvalidCredential for malformed, expired, or mis-signed tokens and
    ConfigurationError when no verification key is available. Does no
    database work.
    """
    if not token or token.count(".") != 2:
        raise InvalidCredential("Malformed identity token.")

    key = await _verification_key(clerk_client)
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=IDENTITY_ALGORITHMS,
            options={"verify_aud": False, "verify_exp": False},
        )
    except JWTError as exc:
        raise InvalidCredential("Identity token signature is invalid.") from exc

    exp = claims.get("exp")
    if exp is None or int(exp) <= _now():
        raise InvalidCredential("Identity token has expired.")
    nbf = claims.get("nbf")
    if nbf is not None and int(nbf) > _now():
        raise InvalidCredential("Identity token is not yet valid.")

    authorized_parties = [party for party in settings.CLERK_AUTHORIZED_PARTIES if party]
    azp = claims.get("azp")
    if authorized_parties and azp and azp not in authorized_parties:
        raise InvalidCredential("Identity token was issued for another party.")

    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise InvalidCredential("Identity token missing subject.")

    session_id = claims.get("sid")
    return IdentityClaims(subject_id=subject, session_id=str(session_id) if session_id else None, claims=claims)
