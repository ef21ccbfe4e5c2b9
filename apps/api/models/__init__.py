"""Models package."""

from .user import User
from .subscription import Subscription
from .credit_transaction import CreditTransaction
from .extension_token import ExtensionToken
from .auth_session import AuthSession
from .organization import Organization
from .organization_subscription import OrganizationSubscription
from .organization_seat import OrganizationSeat
from .webhook_event import WebhookEvent
