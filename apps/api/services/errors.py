"""Error taxonomy shared by services and routers.

Every error carries an HTTP status and a stable machine-readable code; the
application-level exception handler renders them as
``{"error": code, "error_description": message}``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    status_code = 500
    error = "internal_error"

    def __init__(self, message: str = "", *, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.error)
        self.message = message or self.error
        self.extra = extra or {}

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error, "error_description": self.message}
        body.update(self.extra)
        return body


class ConfigurationError(ServiceError):
    status_code = 500
    error = "configuration_error"


class InvalidCredential(ServiceError):
    status_code = 401
    error = "invalid_token"


class InvalidGrant(ServiceError):
    status_code = 400
    error = "invalid_grant"


class InvalidRequest(ServiceError):
    status_code = 400
    error = "invalid_request"


class Forbidden(ServiceError):
    status_code = 403
    error = "forbidden"


class NotFound(ServiceError):
    status_code = 404
    error = "not_found"


class UserNotFound(NotFound):
    error = "user_not_found"


class TokenNotFound(NotFound):
    error = "token_not_found"


class SubscriptionNotFound(NotFound):
    error = "subscription_not_found"


class OrganizationNotFound(NotFound):
    error = "organization_not_found"


class InsufficientCredits(ServiceError):
    status_code = 402
    error = "insufficient_credits"


class DuplicateCreditGrant(ServiceError):
    status_code = 409
    error = "duplicate_grant"


class SeatLimitReached(ServiceError):
    status_code = 402
    error = "seat_limit_reached"


class SeatAlreadyAssigned(ServiceError):
    status_code = 409
    error = "seat_already_assigned"


class RateLimited(ServiceError):
    status_code = 429
    error = "rate_limited"


class PaymentsProviderError(ServiceError):
    status_code = 500
    error = "payments_provider_error"

    def __init__(self, message: str = "Payment provider request failed.", *, provider_code: Optional[str] = None):
        super().__init__(message)
        self.provider_code = provider_code


class IdentityProviderError(ServiceError):
    status_code = 500
    error = "identity_provider_error"


class PersistenceError(ServiceError):
    status_code = 500
    error = "persistence_error"


class WebhookSignatureError(ServiceError):
    status_code = 400
    error = "invalid_signature"
