from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
import pytest

from config import settings
from conftest import identity_header, make_identity_token, seed_user
from services.errors import ConfigurationError, InvalidCredential
from services.identity import verify_identity_token

_OTHER_KEY = (
    rsa.generate_private_key(public_exponent=65537, key_size=2048)
    .private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption())
    .decode()
)


@pytest.mark.asyncio
async def test_valid_token_yields_subject_and_session():
    claims = await verify_identity_token(make_identity_token("user_ok", session_id="sess_ok", email="ok@example.com"))
    assert claims.subject_id == "user_ok"
    assert claims.session_id == "sess_ok"
    assert claims.email == "ok@example.com"


@pytest.mark.asyncio
async def test_session_id_is_optional():
    claims = await verify_identity_token(make_identity_token("user_nosid", session_id=None))
    assert claims.session_id is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "token",
    [
        make_identity_token("user_late", expires_in=-1),
        make_identity_token("user_now", expires_in=0),
        make_identity_token("user_forged", key=_OTHER_KEY),
        "not.a.jwt",
        "garbage",
    ],
)
async def test_rejected_tokens(token):
    with pytest.raises(InvalidCredential):
        await verify_identity_token(token)


@pytest.mark.asyncio
async def test_authorized_party_mismatch_is_rejected(monkeypatch):
    monkeypatch.setattr(settings, "CLERK_AUTHORIZED_PARTIES", ["https://app.softcodes.test"])
    with pytest.raises(InvalidCredential):
        await verify_identity_token(make_identity_token("user_azp", azp="https://evil.test"))
    claims = await verify_identity_token(make_identity_token("user_azp", azp="https://app.softcodes.test"))
    assert claims.subject_id == "user_azp"


@pytest.mark.asyncio
async def test_missing_keys_is_a_configuration_error(monkeypatch):
    monkeypatch.setattr(settings, "CLERK_JWT_KEY", "")
    monkeypatch.setattr(settings, "CLERK_SECRET_KEY", "")
    with pytest.raises(ConfigurationError):
        await verify_identity_token(make_identity_token("user_cfg"))


@pytest.mark.asyncio
async def test_org_role_from_session_claims():
    claims = await verify_identity_token(make_identity_token("user_org", o={"id": "org_1", "rol": "admin"}))
    assert claims.org_id == "org_1"
    assert claims.org_role("org_1") == "org:admin"
    assert claims.org_role("org_2") is None


@pytest.mark.asyncio
async def test_initialize_and_me(api):
    created = await api.client.post(
        "/users/initialize", json={"first_name": "Linus"}, headers=identity_header("user_init", email="l@example.com")
    )
    assert created.status_code == 200
    profile = created.json()
    assert (profile["email"], profile["credits"], profile["plan_type"]) == ("l@example.com", 25, "starter")
    assert profile["subscription"] is None

    again = await api.client.post("/users/initialize", json={}, headers=identity_header("user_init", email="l@example.com"))
    assert again.json()["credits"] == 25

    me = await api.client.get("/users/me", headers=identity_header("user_init"))
    assert me.json()["first_name"] == "Linus"


@pytest.mark.asyncio
async def test_me_for_unknown_user_is_404(api):
    response = await api.client.get("/users/me", headers=identity_header("user_unknown"))
    assert response.status_code == 404
    assert response.json()["error"] == "user_not_found"


@pytest.mark.asyncio
async def test_expired_identity_token_over_http(api):
    await seed_user(api.session_maker, "user_expired")
    response = await api.client.get("/users/me", headers=identity_header("user_expired", expires_in=-10))
    assert response.status_code == 401
    assert response.json()["error"] == "invalid_token"


@pytest.mark.asyncio
async def test_error_bodies_share_one_shape(api):
    wrong_method = await api.client.get("/extension/auth/token")
    assert wrong_method.status_code == 405
    assert wrong_method.json()["error"] == "method_not_allowed"

    invalid = await api.client.post("/extension/auth/token", json={"grant_type": "password"})
    assert invalid.status_code == 422
    assert invalid.json()["error"] == "invalid_request"
    assert "grant_type" in invalid.json()["error_description"]

    missing = await api.client.get("/nowhere")
    assert missing.status_code == 404
    assert set(missing.json()) == {"error", "error_description"}


@pytest.mark.asyncio
async def test_liveness_probe(api):
    response = await api.client.get("/health/live")
    assert response.json() == {"alive": True}
