from datetime import datetime, timedelta, timezone
import secrets
from urllib.parse import parse_qs, urlparse

import pytest
from redis.exceptions import RedisError
from sqlalchemy.future import select

from conftest import identity_header, seed_user
from main import app
from models.auth_session import AuthSession
from routers import rate_limit
from services.crypto import pkce_challenge

REDIRECT_URI = "vscode://softcodes.softcodes/auth-callback"


def _pkce_pair():
    verifier = secrets.token_urlsafe(48)
    return verifier, pkce_challenge(verifier)


async def _initiate_and_authorize(api, subject_id: str):
    verifier, challenge = _pkce_pair()
    state = secrets.token_urlsafe(24)
    initiated = await api.client.post(
        "/extension/auth/initiate",
        json={"code_challenge": challenge, "state": state, "redirect_uri": REDIRECT_URI},
    )
    assert initiated.status_code == 200
    authorized = await api.client.post(
        "/extension/auth/authorize",
        json={"state": state},
        headers=identity_header(subject_id, session_id="sess_browser"),
    )
    assert authorized.status_code == 200
    return verifier, state, authorized.json()


async def _auth_session_count(api) -> int:
    async with api.session_maker() as session:
        result = await session.execute(select(AuthSession))
        return len(result.scalars().all())


def test_pkce_challenge_matches_rfc7636_example():
    verifier = "dBjftJeZ4CVP-mJ0kz2PRBVlWu4fYNlcjxMuWpIzp1Y"
    assert pkce_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


@pytest.mark.asyncio
async def test_full_handshake_issues_tokens_and_consumes_session(api):
    await seed_user(api.session_maker, "user_pkce", credits=25)
    verifier, state, authorized = await _initiate_and_authorize(api, "user_pkce")

    redirect = urlparse(authorized["redirect_url"])
    assert f"{redirect.scheme}://{redirect.netloc}{redirect.path}" == REDIRECT_URI
    assert parse_qs(redirect.query) == {"code": [authorized["code"]], "state": [state]}

    exchanged = await api.client.post(
        "/extension/auth/token",
        json={
            "grant_type": "authorization_code",
            "code": authorized["code"],
            "code_verifier": verifier,
            "state": state,
            "redirect_uri": REDIRECT_URI,
        },
    )
    assert exchanged.status_code == 200
    tokens = exchanged.json()
    assert tokens["session_id"] == "sess_browser"
    assert tokens["pool"] == "personal"
    assert await _auth_session_count(api) == 0

    replay = await api.client.post(
        "/extension/auth/token",
        json={
            "grant_type": "authorization_code",
            "code": authorized["code"],
            "code_verifier": verifier,
            "state": state,
            "redirect_uri": REDIRECT_URI,
        },
    )
    assert replay.status_code == 400
    assert replay.json()["error"] == "invalid_grant"


@pytest.mark.asyncio
async def test_wrong_verifier_fails_and_discards_session(api):
    await seed_user(api.session_maker, "user_pkce_bad")
    _, state, authorized = await _initiate_and_authorize(api, "user_pkce_bad")

    response = await api.client.post(
        "/extension/auth/token",
        json={
            "grant_type": "authorization_code",
            "code": authorized["code"],
            "code_verifier": secrets.token_urlsafe(48),
            "state": state,
            "redirect_uri": REDIRECT_URI,
        },
    )
    assert response.status_code == 400
    assert response.json() == {"error": "invalid_grant", "error_description": "PKCE verification failed."}
    assert await _auth_session_count(api) == 0


@pytest.mark.asyncio
async def test_redirect_uri_mismatch_is_rejected(api):
    await seed_user(api.session_maker, "user_pkce_uri")
    verifier, state, authorized = await _initiate_and_authorize(api, "user_pkce_uri")

    response = await api.client.post(
        "/extension/auth/token",
        json={
            "grant_type": "authorization_code",
            "code": authorized["code"],
            "code_verifier": verifier,
            "state": state,
            "redirect_uri": "vscode://someone-else/callback",
        },
    )
    assert response.status_code == 400
    assert response.json()["error_description"] == "Redirect URI mismatch."


@pytest.mark.asyncio
async def test_expired_session_cannot_be_authorized(api):
    _, challenge = _pkce_pair()
    state = secrets.token_urlsafe(24)
    async with api.session_maker() as session:
        session.add(
            AuthSession(
                state=state,
                code_challenge=challenge,
                redirect_uri=REDIRECT_URI,
                expires_at=datetime.now(timezone.utc) - timedelta(seconds=1),
            )
        )
        await session.commit()

    response = await api.client.post(
        "/extension/auth/authorize", json={"state": state}, headers=identity_header("user_late")
    )
    assert response.status_code == 400
    assert response.json()["error_description"] == "Authentication session expired."
    assert await _auth_session_count(api) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "challenge,state",
    [("short", "s" * 16), ("c" * 43, "too-short"), ("c" * 129, "s" * 16)],
)
async def test_initiate_validates_challenge_and_state(api, challenge, state):
    response = await api.client.post(
        "/extension/auth/initiate",
        json={"code_challenge": challenge, "state": state, "redirect_uri": REDIRECT_URI},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


@pytest.mark.asyncio
async def test_authorize_requires_identity_bearer(api):
    response = await api.client.post("/extension/auth/authorize", json={"state": "x" * 20})
    assert response.status_code == 401
    assert response.json()["error"] == "invalid_token"


@pytest.mark.asyncio
async def test_initiate_returns_sign_in_url(api):
    _, challenge = _pkce_pair()
    state = secrets.token_urlsafe(24)
    response = await api.client.post(
        "/extension/auth/initiate",
        json={"code_challenge": challenge, "state": state, "redirect_uri": REDIRECT_URI},
    )
    payload = response.json()
    assert payload["success"] is True
    assert "/sign-in?" in payload["auth_url"]
    assert payload["expires_at"] > int(datetime.now(timezone.utc).timestamp())


@pytest.mark.asyncio
async def test_initiate_is_rate_limited_per_client(api, monkeypatch):
    async def store_down(*args, **kwargs):
        raise RedisError("connection refused")

    monkeypatch.setattr(rate_limit, "_consume_redis_quota", store_down)
    app.state.disable_rate_limits = False

    statuses = []
    for _ in range(31):
        _, challenge = _pkce_pair()
        response = await api.client.post(
            "/extension/auth/initiate",
            json={"code_challenge": challenge, "state": secrets.token_urlsafe(24), "redirect_uri": REDIRECT_URI},
        )
        statuses.append(response.status_code)

    assert statuses[:30] == [200] * 30
    assert statuses[30] == 429
    assert response.json()["error"] == "rate_limited"
    assert int(response.headers["retry-after"]) >= 1
