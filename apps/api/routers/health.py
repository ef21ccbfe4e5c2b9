"""
Health and readiness probes for the accounts API.
"""

from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings

router = APIRouter()

REQUIRED_SETTINGS = (
    "CLERK_SECRET_KEY",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "CLERK_WEBHOOK_SIGNING_SECRET",
)


def _missing_settings() -> List[str]:
    return [name for name in REQUIRED_SETTINGS if not str(getattr(settings, name, "") or "").strip()]


async def _probe_database() -> str:
    from database import engine

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return f"down: {e}"
    return "up"


async def _probe_redis() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except Exception as e:
        return f"down: {e}"
    finally:
        await client.aclose()
    return "up"


@router.get("/health")
async def health_check():
    """
    Dependency status for operators.
    Redis only backs rate limiting, so an outage there degrades but does not fail requests.
    """
    database = await _probe_database()
    cache = await _probe_redis()
    return {
        "status": "healthy" if database == "up" and cache == "up" else "degraded",
        "api": "up",
        "database": database,
        "redis": cache,
        "identity_provider": "configured" if settings.CLERK_SECRET_KEY or settings.CLERK_JWT_KEY else "missing",
        "payments_provider": "configured" if settings.STRIPE_SECRET_KEY else "missing",
        "webhooks": "configured" if not _missing_settings() else "incomplete",
    }


@router.get("/health/ready")
async def readiness_check():
    """Ready once provider secrets are configured and the database answers."""
    missing = _missing_settings()
    database = await _probe_database()
    if missing or database != "up":
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing, "database": database},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
