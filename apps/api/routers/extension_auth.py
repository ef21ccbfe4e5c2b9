"""
Editor extension sign-in (PKCE) and credential lifecycle endpoints.
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import (
    ExtensionContext,
    get_active_extension_context,
    get_extension_context,
    get_identity,
    identity_client,
)
from routers.rate_limit import rate_limit
from services.errors import InvalidRequest
from services.extension_tokens import (
    issue_tokens,
    list_active_tokens,
    refresh_tokens,
    revoke_token,
)
from services.identity import IdentityClaims
from services.organizations import resolve_org_attribution_claims
from services.pkce import authorize_auth_session, exchange_authorization_code, initiate_auth_session

router = APIRouter()
logger = logging.getLogger(__name__)


class InitiateRequest(BaseModel):
    code_challenge: str
    code_challenge_method: Literal["S256"] = "S256"
    state: str
    redirect_uri: str = Field(min_length=1)


class AuthorizeRequest(BaseModel):
    state: str


class TokenRequest(BaseModel):
    grant_type: Literal["authorization_code", "refresh_token"]
    code: Optional[str] = None
    code_verifier: Optional[str] = None
    state: Optional[str] = None
    redirect_uri: Optional[str] = None
    org_id: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token: Optional[str] = None


class GenerateRequest(BaseModel):
    label: Optional[str] = Field(default=None, max_length=120)
    org_id: Optional[str] = None


def _client_meta(request: Request) -> dict:
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return {"ip_address": ip_address, "user_agent": request.headers.get("user-agent")}


@router.post("/initiate")
async def initiate(
    body: InitiateRequest,
    _rate_limit: None = Depends(rate_limit("extension_initiate", limit=30, window_seconds=300)),
    db: AsyncSession = Depends(get_db),
):
    """Start a sign-in handshake and return the browser URL to open."""
    result = await initiate_auth_session(
        db,
        code_challenge=body.code_challenge,
        state=body.state,
        redirect_uri=body.redirect_uri,
    )
    return {"success": True, **result}


@router.post("/authorize")
async def authorize(
    body: AuthorizeRequest,
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    result = await authorize_auth_session(
        db,
        state=body.state,
        subject_id=identity.subject_id,
        session_id=identity.session_id,
    )
    return {"success": True, **result}


@router.post("/token")
async def token(
    body: TokenRequest,
    request: Request,
    _rate_limit: None = Depends(rate_limit("extension_token", limit=60, window_seconds=300)),
    db: AsyncSession = Depends(get_db),
    clerk=Depends(identity_client),
):
    """OAuth-style token endpoint for both grant types."""
    meta = _client_meta(request)

    if body.grant_type == "refresh_token":
        if not body.refresh_token:
            raise InvalidRequest("refresh_token is required.")
        issued = await refresh_tokens(
            db,
            body.refresh_token,
            previous_access_token=body.access_token,
            clerk_client=clerk,
            **meta,
        )
        return issued.to_response()

    if not body.code or not body.code_verifier or not body.state or not body.redirect_uri:
        raise InvalidRequest("code, code_verifier, state and redirect_uri are required.")
    exchanged = await exchange_authorization_code(
        db,
        code=body.code,
        code_verifier=body.code_verifier,
        state=body.state,
        redirect_uri=body.redirect_uri,
    )
    subject_id = exchanged["subject_id"]
    org_claims = await resolve_org_attribution_claims(db, subject_id, body.org_id, clerk_client=clerk)
    issued = await issue_tokens(
        db,
        subject_id,
        session_id=exchanged["session_id"],
        org_claims=org_claims,
        label="VS Code",
        **meta,
    )
    logger.info("Issued extension credentials for %s via PKCE (pool=%s)", subject_id, issued.pool)
    return issued.to_response()


@router.post("/generate")
async def generate(
    body: GenerateRequest,
    request: Request,
    _rate_limit: None = Depends(rate_limit("extension_generate", limit=20, window_seconds=300)),
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
    clerk=Depends(identity_client),
):
    """Dashboard path: mint a pair directly for the signed-in user."""
    org_claims = await resolve_org_attribution_claims(
        db,
        identity.subject_id,
        body.org_id or identity.org_id,
        clerk_claims=identity,
        clerk_client=clerk,
    )
    issued = await issue_tokens(
        db,
        identity.subject_id,
        session_id=identity.session_id,
        org_claims=org_claims,
        label=body.label or "Dashboard",
        **_client_meta(request),
    )
    return issued.to_response()


@router.get("/tokens")
async def tokens(
    identity: IdentityClaims = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
):
    return {"tokens": await list_active_tokens(db, identity.subject_id)}


@router.post("/revoke")
async def revoke(
    context: ExtensionContext = Depends(get_extension_context),
    db: AsyncSession = Depends(get_db),
):
    result = await revoke_token(db, context.token)
    logger.info("Revoked extension credential for %s", result["subject_id"])
    return {"success": True, "message": "Token revoked."}


@router.get("/validate")
async def validate(context: ExtensionContext = Depends(get_active_extension_context)):
    """Lightweight "still signed in?" probe for the extension."""
    claims = context.claims
    return {
        "valid": True,
        "subject_id": claims["sub"],
        "session_id": claims.get("session_id"),
        "expires_at": claims["exp"],
        "pool": claims.get("pool", "personal"),
    }
