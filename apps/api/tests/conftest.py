import base64
import hashlib
import hmac
import itertools
import json
import time
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from jose import jwt
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from models.user import User
from routers import rate_limit
from routers.auth_scope import identity_client
from routers.billing import payments_client
from services.errors import PaymentsProviderError
from services.webhook_signatures import sign_payload


_RSA_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
PRIVATE_PEM = _RSA_KEY.private_bytes(
    serialization.Encoding.PEM,
    serialization.PrivateFormat.PKCS8,
    serialization.NoEncryption(),
).decode()
PUBLIC_PEM = _RSA_KEY.public_key().public_bytes(
    serialization.Encoding.PEM,
    serialization.PublicFormat.SubjectPublicKeyInfo,
).decode()

STRIPE_WEBHOOK_SECRET = "whsec_stripe_test_secret"
SVIX_SECRET = "whsec_" + base64.b64encode(b"svix-test-signing-secret-bytes").decode()
PRICE_IDS = {
    "pro": {"monthly": "price_pro_monthly", "yearly": "price_pro_yearly"},
    "teams": {"monthly": "price_teams_monthly", "yearly": "price_teams_yearly"},
}


def make_identity_token(
    subject_id: str,
    *,
    session_id: Optional[str] = "sess_test",
    expires_in: int = 300,
    key: str = PRIVATE_PEM,
    **claims: Any,
) -> str:
    now = int(time.time())
    payload = {"sub": subject_id, "iat": now, "nbf": now - 5, "exp": now + expires_in, **claims}
    if session_id:
        payload["sid"] = session_id
    return jwt.encode(payload, key, algorithm="RS256")


def identity_header(subject_id: str, **claims: Any) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_identity_token(subject_id, **claims)}"}


def stripe_signature(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def svix_headers(payload: str, msg_id: str = "msg_test", timestamp: Optional[int] = None) -> Dict[str, str]:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return {
        "svix-id": msg_id,
        "svix-timestamp": str(timestamp),
        "svix-signature": sign_payload(SVIX_SECRET, msg_id, timestamp, payload.encode()),
        "content-type": "application/json",
    }


class FakePayments:
    """In-memory stand-in for the payments client."""

    def __init__(self):
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.created_sessions: List[Dict[str, Any]] = []
        self.calls: List[str] = []
        self._ids = itertools.count(1)

    async def retrieve_customer(self, customer_id):
        self.calls.append(f"retrieve_customer:{customer_id}")
        return self.customers.get(customer_id)

    async def find_customer_by_email(self, email):
        self.calls.append(f"find_customer_by_email:{email}")
        for customer in self.customers.values():
            if customer.get("email") == email:
                return customer
        return None

    async def create_customer(self, *, email, name=None, metadata=None, idempotency_key=None):
        self.calls.append("create_customer")
        customer_id = f"cus_{next(self._ids)}"
        self.customers[customer_id] = {"id": customer_id, "email": email, "metadata": metadata or {}}
        return self.customers[customer_id]

    async def create_checkout_session(self, params):
        session_id = f"cs_test_{next(self._ids)}"
        self.created_sessions.append(params)
        self.sessions[session_id] = {
            "id": session_id,
            "url": f"https://checkout.stripe.test/{session_id}",
            "customer": params.get("customer"),
            "metadata": params.get("metadata", {}),
            "mode": params.get("mode"),
            "payment_status": "unpaid",
        }
        return self.sessions[session_id]

    async def retrieve_checkout_session(self, session_id):
        if session_id not in self.sessions:
            raise PaymentsProviderError(provider_code="resource_missing")
        return self.sessions[session_id]

    async def create_portal_session(self, *, customer_id, return_url):
        return {"id": "bps_test", "url": f"https://billing.stripe.test/{customer_id}"}

    async def retrieve_subscription(self, subscription_id):
        return self.subscriptions.get(subscription_id, {"id": subscription_id, "status": "active", "metadata": {}})


class FakeClerk:
    """In-memory stand-in for the identity provider API client."""

    def __init__(self):
        self.memberships: Dict[str, List[Dict[str, Any]]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}

    def add_membership(self, user_id: str, org_id: str, role: str = "org:member") -> None:
        self.memberships.setdefault(user_id, []).append({"organization": {"id": org_id}, "role": role})

    async def list_user_organization_memberships(self, user_id, limit=100):
        return self.memberships.get(user_id, [])

    async def get_user(self, user_id):
        return self.users.get(user_id, {"id": user_id, "email_addresses": []})

    async def get_jwks(self, refresh=False):
        return {"keys": []}


def stripe_event(event_id: str, event_type: str, obj: Dict[str, Any]) -> str:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}})


async def post_stripe_event(client, payload: str, signature: Optional[str] = None):
    return await client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"stripe-signature": signature or stripe_signature(payload), "content-type": "application/json"},
    )


async def seed_user(session_maker, clerk_id: str, *, credits: int = 0, email: Optional[str] = None, **fields) -> str:
    async with session_maker() as session:
        user = User(clerk_id=clerk_id, email=email or f"{clerk_id}@example.com", credits=credits, **fields)
        session.add(user)
        await session.commit()
        return user.id


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def provider_settings(monkeypatch):
    monkeypatch.setattr(settings, "CLERK_JWT_KEY", PUBLIC_PEM)
    monkeypatch.setattr(settings, "CLERK_SECRET_KEY", "")
    monkeypatch.setattr(settings, "CLERK_AUTHORIZED_PARTIES", [])
    monkeypatch.setattr(settings, "CLERK_WEBHOOK_SIGNING_SECRET", SVIX_SECRET)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", STRIPE_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "STRIPE_PRICE_IDS", PRICE_IDS)
    monkeypatch.setattr(settings, "STRIPE_CREDIT_PRICE_ID", "price_credits")
    monkeypatch.setattr(settings, "JWT_SECRET", "test-extension-secret-with-enough-length")
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", "0123456789abcdef0123456789abcdef")
    monkeypatch.setattr(settings, "TRIAL_DAYS", 0)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'accounts.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def api(session_maker):
    payments = FakePayments()
    clerk = FakeClerk()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[payments_client] = lambda: payments
    app.dependency_overrides[identity_client] = lambda: clerk
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield SimpleNamespace(client=client, session_maker=session_maker, payments=payments, clerk=clerk)

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(payments_client, None)
    app.dependency_overrides.pop(identity_client, None)
