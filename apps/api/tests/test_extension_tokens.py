import time

from jose import jwt
import pytest
from sqlalchemy.future import select

from config import settings
from conftest import identity_header, seed_user
from models.extension_token import ExtensionToken
from models.user import User
from services.crypto import decrypt_value, hash_token
from services.errors import InvalidCredential, InvalidGrant, TokenNotFound, UserNotFound
from services.extension_tokens import (
    decode_extension_token,
    issue_tokens,
    refresh_tokens,
    revoke_token,
    validate_token,
)


@pytest.mark.asyncio
async def test_issue_then_validate_returns_same_subject(session_maker, db):
    await seed_user(session_maker, "user_tok", credits=42)

    issued = await issue_tokens(db, "user_tok", session_id="sess_1", ip_address="10.0.0.1", user_agent="vscode/1.90")
    claims = await validate_token(db, issued.access_token)

    assert claims["sub"] == "user_tok"
    assert claims["session_id"] == "sess_1"
    assert claims["credits"] == 42
    assert claims["plan_type"] == "starter"
    assert claims["aud"] == settings.JWT_AUDIENCE
    assert claims["pool"] == "personal"
    assert issued.expires_in == settings.ACCESS_TOKEN_TTL_SECONDS


@pytest.mark.asyncio
async def test_only_the_hash_and_encrypted_metadata_are_stored(session_maker, db):
    await seed_user(session_maker, "user_hash")
    issued = await issue_tokens(db, "user_hash", ip_address="192.168.1.9", user_agent="vscode/1.91")

    result = await db.execute(select(ExtensionToken))
    record = result.scalar_one()
    assert record.token_hash == hash_token(issued.access_token)
    assert issued.access_token not in (record.token_hash, record.ip_address_encrypted, record.device_info_encrypted)
    assert decrypt_value(record.ip_address_encrypted) == "192.168.1.9"
    assert decrypt_value(record.device_info_encrypted) == "vscode/1.91"


@pytest.mark.asyncio
async def test_issue_for_unknown_user_fails(db):
    with pytest.raises(UserNotFound):
        await issue_tokens(db, "user_ghost")


@pytest.mark.asyncio
async def test_revoke_then_validate_fails(session_maker, db):
    await seed_user(session_maker, "user_rev")
    issued = await issue_tokens(db, "user_rev")

    await revoke_token(db, issued.access_token)

    with pytest.raises(InvalidCredential):
        await validate_token(db, issued.access_token)
    with pytest.raises(TokenNotFound):
        await revoke_token(db, issued.access_token)


@pytest.mark.asyncio
async def test_refresh_preserves_session_and_revokes_previous_access(session_maker, db):
    await seed_user(session_maker, "user_ref")
    first = await issue_tokens(db, "user_ref", session_id="sess_keep", label="Laptop")

    second = await refresh_tokens(db, first.refresh_token, previous_access_token=first.access_token)

    assert second.session_id == "sess_keep"
    assert decode_extension_token(second.access_token)["session_id"] == "sess_keep"
    assert second.access_token != first.access_token
    with pytest.raises(InvalidCredential):
        await validate_token(db, first.access_token)
    assert (await validate_token(db, second.access_token))["sub"] == "user_ref"

    result = await db.execute(select(ExtensionToken).where(ExtensionToken.token_hash == hash_token(second.access_token)))
    record = result.scalar_one()
    assert record.refresh_count == 1
    assert record.label == "Laptop"


@pytest.mark.asyncio
async def test_refresh_rejects_access_tokens_and_unknown_subjects(session_maker, db):
    await seed_user(session_maker, "user_grant")
    issued = await issue_tokens(db, "user_grant")

    with pytest.raises(InvalidGrant):
        await refresh_tokens(db, issued.access_token)

    now = int(time.time())
    orphan = jwt.encode(
        {
            "sub": "user_deleted",
            "session_id": "sess_x",
            "type": "refresh",
            "iss": settings.JWT_ISSUER,
            "iat": now,
            "exp": now + 60,
        },
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(InvalidGrant):
        await refresh_tokens(db, orphan)
    with pytest.raises(InvalidGrant):
        await refresh_tokens(db, "not-a-token")


def test_token_at_expiry_boundary_is_expired(monkeypatch):
    now = int(time.time())
    token = jwt.encode(
        {
            "sub": "user_edge",
            "type": "access",
            "iss": settings.JWT_ISSUER,
            "aud": settings.JWT_AUDIENCE,
            "iat": now - 10,
            "exp": now,
        },
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    monkeypatch.setattr("services.extension_tokens._now", lambda: now)
    with pytest.raises(InvalidCredential):
        decode_extension_token(token)

    monkeypatch.setattr("services.extension_tokens._now", lambda: now - 1)
    assert decode_extension_token(token)["sub"] == "user_edge"


@pytest.mark.asyncio
async def test_generate_list_validate_and_revoke_over_http(api):
    await seed_user(api.session_maker, "user_http", credits=7)

    generated = await api.client.post(
        "/extension/auth/generate",
        json={"label": "Work laptop"},
        headers={**identity_header("user_http"), "user-agent": "vscode-test"},
    )
    assert generated.status_code == 200
    tokens = generated.json()
    assert tokens["token_type"] == "Bearer"
    assert tokens["session_id"] == "sess_test"
    bearer = {"Authorization": f"Bearer {tokens['access_token']}"}

    listed = await api.client.get("/extension/auth/tokens", headers=identity_header("user_http"))
    assert [item["label"] for item in listed.json()["tokens"]] == ["Work laptop"]

    validated = await api.client.get("/extension/auth/validate", headers=bearer)
    assert validated.status_code == 200
    assert validated.json()["subject_id"] == "user_http"

    revoked = await api.client.post("/extension/auth/revoke", headers=bearer)
    assert revoked.status_code == 200
    assert revoked.json()["success"] is True

    after = await api.client.get("/extension/auth/validate", headers=bearer)
    assert after.status_code == 401
    assert after.json()["error"] == "invalid_token"

    again = await api.client.post("/extension/auth/revoke", headers=bearer)
    assert again.status_code == 404
    assert again.json()["error"] == "token_not_found"


@pytest.mark.asyncio
async def test_refresh_grant_over_http(api):
    await seed_user(api.session_maker, "user_rt")
    generated = await api.client.post("/extension/auth/generate", json={}, headers=identity_header("user_rt"))
    tokens = generated.json()

    refreshed = await api.client.post(
        "/extension/auth/token",
        json={
            "grant_type": "refresh_token",
            "refresh_token": tokens["refresh_token"],
            "access_token": tokens["access_token"],
        },
    )
    assert refreshed.status_code == 200
    assert refreshed.json()["session_id"] == tokens["session_id"]

    bad = await api.client.post(
        "/extension/auth/token",
        json={"grant_type": "refresh_token", "refresh_token": tokens["access_token"]},
    )
    assert bad.status_code == 400
    assert bad.json()["error"] == "invalid_grant"


@pytest.mark.asyncio
async def test_usage_endpoint_debits_or_returns_402(api):
    await seed_user(api.session_maker, "user_usage", credits=10)
    generated = await api.client.post("/extension/auth/generate", json={}, headers=identity_header("user_usage"))
    bearer = {"Authorization": f"Bearer {generated.json()['access_token']}"}

    ok = await api.client.post("/billing/credits/usage", json={"amount": 4, "description": "chat"}, headers=bearer)
    assert ok.status_code == 200
    assert ok.json()["balance_after"] == 6

    denied = await api.client.post("/billing/credits/usage", json={"amount": 7}, headers=bearer)
    assert denied.status_code == 402
    body = denied.json()
    assert body["error"] == "insufficient_credits"
    assert body["required"] == 7
    assert body["available"] == 6


@pytest.mark.asyncio
async def test_revoked_token_cannot_spend_credits(api):
    await seed_user(api.session_maker, "user_revoked_spend", credits=50)
    generated = await api.client.post(
        "/extension/auth/generate", json={}, headers=identity_header("user_revoked_spend")
    )
    bearer = {"Authorization": f"Bearer {generated.json()['access_token']}"}
    assert (await api.client.post("/extension/auth/revoke", headers=bearer)).status_code == 200

    response = await api.client.post("/billing/credits/usage", json={"amount": 10}, headers=bearer)

    assert response.status_code == 401
    assert response.json()["error"] == "invalid_token"
    async with api.session_maker() as session:
        result = await session.execute(select(User.credits).where(User.clerk_id == "user_revoked_spend"))
        assert result.scalar_one() == 50


@pytest.mark.asyncio
async def test_signed_but_unrecorded_token_cannot_spend_credits(api):
    await seed_user(api.session_maker, "user_unrecorded", credits=50)
    now = int(time.time())
    forged = jwt.encode(
        {
            "sub": "user_unrecorded",
            "type": "access",
            "iss": settings.JWT_ISSUER,
            "aud": settings.JWT_AUDIENCE,
            "iat": now,
            "exp": now + 300,
        },
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )

    response = await api.client.post(
        "/billing/credits/usage", json={"amount": 10}, headers={"Authorization": f"Bearer {forged}"}
    )
    assert response.status_code == 401
