"""
Duplicate delivery guard - providers deliver at-least-once, so the same
transaction can arrive many times (retries, relay + direct, manual replays).

The ledger lookup here is advisory: it is not atomic with the insert that
follows. The UNIQUE constraint on subscriptions.transaction_id is what makes
concurrent duplicates fail safely (see src.services.reconciler).
"""
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.subscription import SubscriptionRecord

logger = logging.getLogger(__name__)

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from src.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def is_duplicate_transaction(db: AsyncSession, transaction_key: str) -> bool:
    """
    Check whether a ledger row already exists for this transaction key.

    Returns True if duplicate, False if new.
    """
    result = await db.execute(
        select(SubscriptionRecord.id)
        .where(SubscriptionRecord.transaction_id == transaction_key)
        .limit(1)
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        logger.info(
            "Duplicate transaction detected: %s",
            transaction_key,
            extra={"transaction_id": transaction_key},
        )
        return True
    return False
