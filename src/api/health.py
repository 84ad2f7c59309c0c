"""
Liveness and readiness probes, mounted on the main app and the relay.

Readiness tiers:
- ready:       database and Redis reachable
- degraded:    database up, Redis down (locks and alert cooldowns fall back)
- unavailable: database down; webhooks would only get the storage-error ack
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Readiness: database unreachable: %s", str(e))
        return False


async def _redis_ok() -> bool:
    from src.utils.dedup import get_redis

    try:
        redis = await get_redis()
        await redis.ping()
        return True
    except Exception as e:
        logger.warning("Readiness: Redis unreachable: %s", str(e))
        return False


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now(), "version": VERSION}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    checks = {
        "database": await _database_ok(db),
        "redis": await _redis_ok(),
    }
    if not checks["database"]:
        status = "unavailable"
    elif not checks["redis"]:
        status = "degraded"
    else:
        status = "ready"
    return {"status": status, "checks": checks, "timestamp": _now()}
