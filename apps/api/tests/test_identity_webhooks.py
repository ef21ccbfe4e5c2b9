import json
import time

import pytest
from sqlalchemy.future import select

from conftest import SVIX_SECRET, identity_header, seed_user, svix_headers
from models.credit_transaction import CreditTransaction
from models.extension_token import ExtensionToken
from models.organization import Organization
from models.organization_subscription import OrganizationSubscription
from models.user import User
from services.errors import WebhookSignatureError
from services.webhook_signatures import sign_payload, verify_svix_signature


def _user_payload(clerk_id: str, email: str = None, **fields):
    addresses = [{"id": "idn_1", "email_address": email}] if email else []
    return {
        "id": clerk_id,
        "email_addresses": addresses,
        "primary_email_address_id": "idn_1" if email else None,
        **fields,
    }


async def _post(api, event_type: str, data, msg_id: str = "msg_1"):
    payload = json.dumps({"type": event_type, "object": "event", "data": data})
    return await api.client.post("/webhooks/clerk", content=payload, headers=svix_headers(payload, msg_id))


async def _user(api, clerk_id: str):
    async with api.session_maker() as session:
        result = await session.execute(select(User).where(User.clerk_id == clerk_id))
        return result.scalar_one_or_none()


def test_signature_accepts_any_matching_v1_entry():
    body = b'{"type":"user.created"}'
    now = int(time.time())
    good = sign_payload(SVIX_SECRET, "msg_multi", now, body)
    headers = {"svix-id": "msg_multi", "svix-timestamp": str(now), "svix-signature": f"v1,bogus {good}"}
    assert verify_svix_signature(body, headers, SVIX_SECRET) == "msg_multi"


def test_signature_rejects_stale_timestamp_and_tampered_body():
    body = b'{"type":"user.created"}'
    sent = int(time.time()) - 3600
    headers = {
        "svix-id": "msg_old",
        "svix-timestamp": str(sent),
        "svix-signature": sign_payload(SVIX_SECRET, "msg_old", sent, body),
    }
    with pytest.raises(WebhookSignatureError):
        verify_svix_signature(body, headers, SVIX_SECRET, tolerance_seconds=300)
    assert verify_svix_signature(body, headers, SVIX_SECRET, now=sent + 10) == "msg_old"
    with pytest.raises(WebhookSignatureError):
        verify_svix_signature(body + b" ", headers, SVIX_SECRET, now=sent + 10)


@pytest.mark.asyncio
async def test_user_created_without_email_is_skipped(api):
    response = await _post(api, "user.created", _user_payload("user_no_email"))
    assert response.status_code == 200
    assert response.json()["action"] == "skipped"
    assert await _user(api, "user_no_email") is None


@pytest.mark.asyncio
async def test_user_created_then_updated(api):
    created = await _post(
        api, "user.created", _user_payload("user_sync", "sync@example.com", first_name="Grace"), msg_id="msg_c"
    )
    assert created.json()["action"] == "upserted"
    user = await _user(api, "user_sync")
    assert (user.email, user.first_name, user.credits, user.plan_type) == ("sync@example.com", "Grace", 25, "starter")

    await _post(
        api,
        "user.updated",
        _user_payload("user_sync", "grace@example.com", last_name="Hopper", image_url="https://img.test/g.png"),
        msg_id="msg_u",
    )
    user = await _user(api, "user_sync")
    assert (user.email, user.first_name, user.last_name) == ("grace@example.com", "Grace", "Hopper")
    assert user.avatar_url == "https://img.test/g.png"
    assert user.credits == 25


@pytest.mark.asyncio
async def test_duplicate_delivery_is_processed_once(api):
    first = await _post(api, "user.created", _user_payload("user_twice", "twice@example.com"), msg_id="msg_same")
    second = await _post(api, "user.created", _user_payload("user_twice", "twice@example.com"), msg_id="msg_same")
    assert first.json()["handled"] is True
    assert second.json()["duplicate"] is True


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(api):
    payload = json.dumps({"type": "user.created", "data": _user_payload("user_forged", "forged@example.com")})
    headers = svix_headers(payload, "msg_forged")
    headers["svix-signature"] = "v1,AAAA"
    response = await api.client.post("/webhooks/clerk", content=payload, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_signature"
    assert await _user(api, "user_forged") is None


@pytest.mark.asyncio
async def test_non_object_body_is_a_bad_request(api):
    payload = json.dumps([{"type": "user.created"}])
    response = await api.client.post("/webhooks/clerk", content=payload, headers=svix_headers(payload, "msg_list"))
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


@pytest.mark.asyncio
async def test_user_deleted_removes_user_and_dependents(api):
    await seed_user(api.session_maker, "user_gone", credits=40)
    generated = await api.client.post("/extension/auth/generate", json={}, headers=identity_header("user_gone"))
    bearer = {"Authorization": f"Bearer {generated.json()['access_token']}"}
    usage = await api.client.post("/billing/credits/usage", json={"amount": 1}, headers=bearer)
    assert usage.status_code == 200

    response = await _post(api, "user.deleted", {"id": "user_gone", "deleted": True}, msg_id="msg_del")

    assert response.json()["action"] == "deleted"
    assert await _user(api, "user_gone") is None
    async with api.session_maker() as session:
        assert (await session.execute(select(ExtensionToken))).scalars().all() == []
        assert (await session.execute(select(CreditTransaction))).scalars().all() == []

    unknown = await _post(api, "user.deleted", {"id": "user_never"}, msg_id="msg_del_2")
    assert unknown.json()["action"] == "skipped"


@pytest.mark.asyncio
async def test_session_ended_revokes_bound_extension_tokens(api):
    await seed_user(api.session_maker, "user_session")
    generated = await api.client.post(
        "/extension/auth/generate", json={}, headers=identity_header("user_session", session_id="sess_end")
    )
    bearer = {"Authorization": f"Bearer {generated.json()['access_token']}"}
    assert (await api.client.get("/extension/auth/validate", headers=bearer)).status_code == 200

    response = await _post(api, "session.ended", {"id": "sess_end", "user_id": "user_session"}, msg_id="msg_end")

    assert response.json()["revoked"] == 1
    assert (await api.client.get("/extension/auth/validate", headers=bearer)).status_code == 401
    usage = await api.client.post("/billing/credits/usage", json={"amount": 1}, headers=bearer)
    assert usage.status_code == 401


@pytest.mark.asyncio
async def test_membership_created_assigns_seat_when_subscription_exists(api):
    await seed_user(api.session_maker, "user_joiner")
    async with api.session_maker() as session:
        organization = Organization(clerk_org_id="org_sync", name="Sync Co")
        session.add(organization)
        await session.flush()
        session.add(
            OrganizationSubscription(
                organization_id=organization.id,
                stripe_subscription_id="sub_sync",
                seats_total=2,
                credits_per_seat=500,
                total_credits=1000,
                status="active",
            )
        )
        await session.commit()

    membership = {
        "organization": {"id": "org_sync", "name": "Sync Co"},
        "public_user_data": {"user_id": "user_joiner"},
        "role": "org:admin",
    }
    created = await _post(api, "organization.membership.created", membership, msg_id="msg_join")
    assert created.json()["action"] == "seat_assigned"
    assert (await _user(api, "user_joiner")).credits == 500

    deleted = await _post(api, "organization.membership.deleted", membership, msg_id="msg_leave")
    assert deleted.json()["action"] == "seat_removed"
    assert (await _user(api, "user_joiner")).credits == 0


@pytest.mark.asyncio
async def test_membership_without_subscription_only_syncs_organization(api):
    await seed_user(api.session_maker, "user_early")
    membership = {
        "organization": {"id": "org_unpaid", "name": "Unpaid"},
        "public_user_data": {"user_id": "user_early"},
        "role": "org:member",
    }
    response = await _post(api, "organization.membership.created", membership, msg_id="msg_unpaid")

    assert response.json()["action"] == "organization_synced"
    assert response.json()["reason"] == "subscription_not_found"
    async with api.session_maker() as session:
        org = (await session.execute(select(Organization))).scalar_one()
    assert org.name == "Unpaid"


@pytest.mark.asyncio
async def test_unknown_identity_events_are_acknowledged(api):
    response = await _post(api, "email.created", {"id": "ema_1"}, msg_id="msg_email")
    assert response.json() == {"received": True, "handled": False, "type": "email.created"}
