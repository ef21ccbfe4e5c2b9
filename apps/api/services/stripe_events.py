"""Signature verification and typed parsing of payments-provider webhooks."""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
import stripe

from config import require_stripe_webhook_secret
from services.errors import InvalidRequest, WebhookSignatureError

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def _object_id(value: Any) -> Optional[str]:
    # Expandable fields arrive either as an id string or as the expanded object.
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class StripePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = (self.metadata or {}).get(key)
        return str(value) if value not in (None, "") else default


class CheckoutSession(StripePayload):
    mode: Optional[str] = None
    payment_status: Optional[str] = None
    status: Optional[str] = None
    customer: Optional[Any] = None
    customer_email: Optional[str] = None
    customer_details: Optional[Dict[str, Any]] = None
    subscription: Optional[Any] = None

    @property
    def customer_id(self) -> Optional[str]:
        return _object_id(self.customer)

    @property
    def subscription_id(self) -> Optional[str]:
        return _object_id(self.subscription)

    @property
    def email(self) -> Optional[str]:
        if self.customer_email:
            return self.customer_email
        return (self.customer_details or {}).get("email")


class StripeSubscription(StripePayload):
    status: Optional[str] = None
    customer: Optional[Any] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    trial_end: Optional[int] = None
    items: Optional[Dict[str, Any]] = None

    @property
    def customer_id(self) -> Optional[str]:
        return _object_id(self.customer)

    def _first_item(self) -> Dict[str, Any]:
        data = (self.items or {}).get("data") or []
        return data[0] if data else {}

    def period(self) -> Tuple[Optional[int], Optional[int]]:
        """Billing period bounds; newer API versions only report them per item."""
        if self.current_period_start or self.current_period_end:
            return self.current_period_start, self.current_period_end
        item = self._first_item()
        return item.get("current_period_start"), item.get("current_period_end")

    @property
    def quantity(self) -> Optional[int]:
        quantity = self._first_item().get("quantity")
        return int(quantity) if quantity else None

    @property
    def interval(self) -> Optional[str]:
        price = self._first_item().get("price") or {}
        return (price.get("recurring") or {}).get("interval")


class Invoice(StripePayload):
    customer: Optional[Any] = None
    subscription: Optional[Any] = None
    billing_reason: Optional[str] = None
    parent: Optional[Dict[str, Any]] = None

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return _object_id(self.subscription)
        details = (self.parent or {}).get("subscription_details") or {}
        return _object_id(details.get("subscription"))


class _Event(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    created: Optional[int] = None
    livemode: bool = False


class CheckoutSessionCompletedData(BaseModel):
    object: CheckoutSession


class SubscriptionData(BaseModel):
    object: StripeSubscription


class InvoiceData(BaseModel):
    object: Invoice


class CheckoutSessionCompleted(_Event):
    type: Literal["checkout.session.completed"]
    data: CheckoutSessionCompletedData


class SubscriptionCreated(_Event):
    type: Literal["customer.subscription.created"]
    data: SubscriptionData


class SubscriptionUpdated(_Event):
    type: Literal["customer.subscription.updated"]
    data: SubscriptionData


class SubscriptionDeleted(_Event):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionData


class InvoicePaymentSucceeded(_Event):
    type: Literal["invoice.payment_succeeded"]
    data: InvoiceData


class InvoicePaymentFailed(_Event):
    type: Literal["invoice.payment_failed"]
    data: InvoiceData


class UnhandledEvent(_Event):
    type: str


StripeEvent = Annotated[
    Union[
        CheckoutSessionCompleted,
        SubscriptionCreated,
        SubscriptionUpdated,
        SubscriptionDeleted,
        InvoicePaymentSucceeded,
        InvoicePaymentFailed,
    ],
    Field(discriminator="type"),
]

HANDLED_EVENT_TYPES = (
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
)

_event_adapter = TypeAdapter(StripeEvent)


def parse_event(payload: Dict[str, Any]) -> Union[StripeEvent, UnhandledEvent]:
    """Validate a decoded event body against the handled event types."""
    event_type = str(payload.get("type") or "")
    try:
        if event_type not in HANDLED_EVENT_TYPES:
            return UnhandledEvent.model_validate(payload)
        return _event_adapter.validate_python(payload)
    except ValidationError as exc:
        logger.warning("Malformed %s webhook payload: %s", event_type or "unknown", exc.error_count())
        raise InvalidRequest("Malformed webhook payload.") from exc


def construct_event(payload: bytes, sig_header: Optional[str]) -> Union[StripeEvent, UnhandledEvent]:
    """Verify the ``Stripe-Signature`` header over the raw body, then parse.

    Nothing in the body is looked at before the signature checks out.
    """
    secret = require_stripe_webhook_secret()
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header.")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookSignatureError("Invalid webhook signature.") from exc
    try:
        stripe.WebhookSignature.verify_header(body, sig_header, secret, SIGNATURE_TOLERANCE_SECONDS)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc.user_message or exc)
        raise WebhookSignatureError("Invalid webhook signature.") from exc

    try:
        decoded = json.loads(body)
    except ValueError as exc:
        raise InvalidRequest("Webhook body is not valid JSON.") from exc
    if not isinstance(decoded, dict):
        raise InvalidRequest("Webhook body must be a JSON object.")
    return parse_event(decoded)
