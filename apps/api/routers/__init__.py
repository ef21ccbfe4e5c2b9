"""Routers package."""

from . import (
    health,
    users,
    extension_auth,
    billing,
    organizations,
    webhooks,
)
