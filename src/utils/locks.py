"""
Per-transaction Redis locks.

A provider retry can arrive while the original delivery is still being
applied. Both pipelines take the lock on the event's idempotency key, so the
second one sees the ledger row the first one wrote.

The lock narrows a window, nothing more. With Redis unreachable the caller
runs unlocked and the UNIQUE subscriptions.transaction_id decides.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)

LOCK_PREFIX = "subsync:lock:txn:"
LOCK_TTL_SECONDS = 30
LOCK_WAIT_SECONDS = 5
LOCK_RETRY_DELAY = 0.1

# Delete only when the stored token is ours
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class LockTimeoutError(Exception):
    """Another holder kept the transaction lock for the whole wait."""


async def _try_acquire(key: str, token: str, ttl: int, wait: float) -> Optional[bool]:
    """
    True when acquired, False when still held by someone else at the
    deadline, None when Redis itself is unavailable.
    """
    from src.utils.dedup import get_redis

    try:
        redis = await get_redis()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait
        while True:
            if await redis.set(key, token, nx=True, ex=ttl):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(LOCK_RETRY_DELAY)
    except Exception as e:
        logger.warning("Transaction lock unavailable (%s): %s", key, str(e))
        return None


async def _release(key: str, token: str) -> None:
    from src.utils.dedup import get_redis

    try:
        redis = await get_redis()
        await redis.eval(_RELEASE_SCRIPT, 1, key, token)
    except Exception as e:
        # TTL expiry frees it anyway
        logger.warning("Transaction lock release failed (%s): %s", key, str(e))


@asynccontextmanager
async def transaction_lock(
    transaction_key: str,
    ttl: int = LOCK_TTL_SECONDS,
    wait: float = LOCK_WAIT_SECONDS,
) -> AsyncIterator[bool]:
    """
    Hold the lock for one idempotency key while the body runs.

    Yields True when the lock is held and False when Redis is down.
    wait=0 makes a single attempt. Raises LockTimeoutError when the key
    stays busy.

        async with transaction_lock(event.idempotency_key):
            ...
    """
    key = f"{LOCK_PREFIX}{transaction_key}"
    token = uuid.uuid4().hex

    acquired = await _try_acquire(key, token, ttl, wait)
    if acquired is False:
        logger.info("Transaction lock busy after %.1fs: %s", wait, transaction_key)
        raise LockTimeoutError(f"Transaction {transaction_key} is locked by another delivery")

    try:
        yield bool(acquired)
    finally:
        if acquired:
            await _release(key, token)
