"""Payments provider (Stripe) client.

Wraps the synchronous Stripe SDK behind coroutines and hands back plain
dictionaries so webhook payloads and API responses are handled the same way.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import stripe

from config import require_stripe_secret_key
from services.errors import PaymentsProviderError

logger = logging.getLogger(__name__)


def _to_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    for attr in ("to_dict", "to_dict_recursive"):
        converter = getattr(obj, attr, None)
        if callable(converter):
            return converter()
    return dict(obj)


class PaymentsClient:
    """Service wrapper around ``stripe.StripeClient``."""

    def __init__(self, api_key: str):
        self._client = stripe.StripeClient(api_key)

    async def _call(self, operation: str, fn, *args, **kwargs) -> Dict[str, Any]:
        try:
            result = await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.error(
                "Stripe %s failed: code=%s status=%s message=%s",
                operation,
                getattr(exc, "code", None),
                getattr(exc, "http_status", None),
                getattr(exc, "user_message", None) or str(exc),
            )
            raise PaymentsProviderError(provider_code=getattr(exc, "code", None)) from exc
        return _to_dict(result)

    async def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Return the customer, or None when it does not exist or was deleted."""
        try:
            customer = await self._call("customers.retrieve", self._client.v1.customers.retrieve, customer_id)
        except PaymentsProviderError as exc:
            if exc.provider_code == "resource_missing":
                return None
            raise
        if customer.get("deleted"):
            return None
        return customer

    async def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        result = await self._call(
            "customers.list",
            self._client.v1.customers.list,
            params={"email": email, "limit": 1},
        )
        data = result.get("data") or []
        return _to_dict(data[0]) if data else None

    async def create_customer(
        self,
        *,
        email: Optional[str],
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"metadata": metadata or {}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        return await self._call("customers.create", self._client.v1.customers.create, params=params, options=options)

    async def create_checkout_session(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("checkout.sessions.create", self._client.v1.checkout.sessions.create, params=params)

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return await self._call(
            "checkout.sessions.retrieve", self._client.v1.checkout.sessions.retrieve, session_id
        )

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        return await self._call(
            "billing_portal.sessions.create",
            self._client.v1.billing_portal.sessions.create,
            params={"customer": customer_id, "return_url": return_url},
        )

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._call("subscriptions.retrieve", self._client.v1.subscriptions.retrieve, subscription_id)


_payments_client: Optional[PaymentsClient] = None


def get_payments_client() -> PaymentsClient:
    """Process-wide client, created on first use."""
    global _payments_client
    if _payments_client is None:
        _payments_client = PaymentsClient(require_stripe_secret_key())
    return _payments_client
