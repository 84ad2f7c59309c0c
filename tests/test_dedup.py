"""
Deduplication and transaction lock tests.
"""
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from src.models.subscription import SubscriptionRecord
from src.models.user_account import UserAccount
from src.utils.dedup import is_duplicate_transaction
from src.utils.locks import LockTimeoutError, transaction_lock


async def _ledger_row(db, transaction_id: str) -> None:
    user = UserAccount(email=f"{uuid.uuid4().hex[:8]}@example.com", access_level="premium")
    db.add(user)
    await db.flush()
    db.add(SubscriptionRecord(
        user_id=user.id,
        plan_type="premium_30",
        status="active",
        start_date=datetime.now(timezone.utc),
        origin_provider="hotmart",
        transaction_id=transaction_id,
    ))
    await db.commit()


class TestIsDuplicateTransaction:
    async def test_new_transaction_returns_false(self, db):
        assert await is_duplicate_transaction(db, "HP-NEW") is False

    async def test_existing_transaction_returns_true(self, db):
        await _ledger_row(db, "HP-SEEN")
        assert await is_duplicate_transaction(db, "HP-SEEN") is True

    async def test_revoke_key_is_distinct_from_grant(self, db):
        await _ledger_row(db, "HP-1")
        assert await is_duplicate_transaction(db, "HP-1:refunded") is False


class TestTransactionLock:
    """Test the Redis SET NX lock with mocked Redis."""

    async def test_acquire_and_release(self, mock_redis):
        async with transaction_lock("HP-1"):
            pass
        key = mock_redis.set.call_args.args[0]
        assert key == "subsync:lock:txn:HP-1"
        assert mock_redis.set.call_args.kwargs["nx"] is True
        mock_redis.eval.assert_awaited_once()

    async def test_busy_lock_times_out(self, mock_redis):
        """SET NX never succeeds: LockTimeoutError after the wait."""
        mock_redis.set = AsyncMock(return_value=None)
        with pytest.raises(LockTimeoutError):
            async with transaction_lock("HP-1", wait=0.2):
                pass
        mock_redis.eval.assert_not_awaited()

    async def test_redis_failure_proceeds_without_lock(self):
        """Redis down should fail-open; the ledger constraint still protects us."""
        entered = False
        with patch("src.utils.dedup.get_redis") as mock_get_redis:
            mock_get_redis.side_effect = Exception("Redis connection refused")
            async with transaction_lock("HP-1"):
                entered = True
        assert entered is True

    async def test_released_on_exception(self, mock_redis):
        with pytest.raises(RuntimeError):
            async with transaction_lock("HP-1"):
                raise RuntimeError("apply failed")
        mock_redis.eval.assert_awaited_once()
