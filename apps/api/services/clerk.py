"""Identity provider (Clerk) REST client."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from config import require_clerk_secret_key, settings
from services.errors import IdentityProviderError

logger = logging.getLogger(__name__)


class ClerkClient:
    """Thin async wrapper over the Clerk backend API."""

    def __init__(self, secret_key: str, base_url: Optional[str] = None, timeout: float = 10.0):
        self._http = httpx.AsyncClient(
            base_url=(base_url or settings.CLERK_API_URL).rstrip("/"),
            headers={"Authorization": f"Bearer {secret_key}"},
            timeout=timeout,
        )
        self._jwks: Optional[Dict[str, Any]] = None

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._http.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("Clerk API %s failed with status %s", path, exc.response.status_code)
            raise IdentityProviderError("Identity provider request failed.") from exc
        except httpx.HTTPError as exc:
            logger.error("Clerk API %s unreachable: %s", path, exc)
            raise IdentityProviderError("Identity provider request failed.") from exc
        return response.json()

    async def get_jwks(self, refresh: bool = False) -> Dict[str, Any]:
        if self._jwks is None or refresh:
            self._jwks = await self._get("/jwks")
        return self._jwks

    async def get_user(self, user_id: str) -> Dict[str, Any]:
        return await self._get(f"/users/{user_id}")

    async def list_user_organization_memberships(self, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        payload = await self._get(f"/users/{user_id}/organization_memberships", params={"limit": limit})
        return _data_list(payload)

    async def aclose(self) -> None:
        await self._http.aclose()


def _data_list(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    if isinstance(payload, list):
        return payload
    return []


_clerk_client: Optional[ClerkClient] = None


def get_clerk_client() -> ClerkClient:
    """Process-wide client, created on first use."""
    global _clerk_client
    if _clerk_client is None:
        _clerk_client = ClerkClient(require_clerk_secret_key())
    return _clerk_client


async def close_clerk_client() -> None:
    global _clerk_client
    if _clerk_client is not None:
        await _clerk_client.aclose()
        _clerk_client = None
