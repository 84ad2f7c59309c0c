"""
Outbox recovery worker - re-drives webhook logs that were recorded but never
finished (process died between the 200 reply and the pipeline, or the
outcome write failed).

Picks records in received/processing whose updated_at is older than
OUTBOX_STALE_SECONDS. Records in error are left for manual replay.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "subsync:worker_health:outbox_recovery"


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=600)
    except Exception as e:
        logger.debug("Outbox heartbeat failed: %s", str(e))


async def run_outbox_recovery():
    """Main outbox recovery loop. Runs continuously."""
    from src.config import get_settings
    settings = get_settings()
    logger.info("Outbox recovery worker started (stale after %ds)", settings.outbox_stale_seconds)

    while True:
        try:
            redriven = await recover_stale_logs()
            if redriven > 0:
                logger.info("Outbox recovery re-drove %d webhook logs", redriven)
        except Exception as e:
            logger.error("Outbox recovery error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(settings.outbox_poll_seconds)


async def find_stale_log_ids(stale_seconds: int, limit: int) -> list:
    """Ids of records stuck in received/processing, oldest first."""
    from src.database import async_session_factory
    from src.models.webhook_log import WebhookLog

    cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_seconds)
    async with async_session_factory() as db:
        result = await db.execute(
            select(WebhookLog.id)
            .where(
                WebhookLog.status.in_(("received", "processing")),
                WebhookLog.updated_at < cutoff,
            )
            .order_by(WebhookLog.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())


async def recover_stale_logs() -> int:
    """Re-run the pipeline for stale records. Returns count re-driven."""
    from src.config import get_settings
    from src.services.ingestion import process_webhook_log
    from src.utils.locks import LockTimeoutError, transaction_lock

    settings = get_settings()
    log_ids = await find_stale_log_ids(settings.outbox_stale_seconds, settings.outbox_batch_size)
    redriven = 0

    if len(log_ids) >= settings.outbox_batch_size:
        from src.utils.alerting import AlertType, send_alert

        await send_alert(
            AlertType.OUTBOX_BACKLOG,
            f"At least {len(log_ids)} webhook logs unfinished for over {settings.outbox_stale_seconds}s",
            severity="warning",
        )

    for log_id in log_ids:
        try:
            # Another instance may be recovering the same record
            async with transaction_lock(f"outbox:{log_id}", ttl=120, wait=0):
                outcome = await process_webhook_log(log_id)
        except LockTimeoutError:
            continue
        except Exception as e:
            logger.warning(
                "Outbox re-drive failed: %s", str(e),
                extra={"webhook_log_id": str(log_id)},
            )
            continue

        if outcome.get("status") != "not_processed":
            redriven += 1
            logger.info(
                "Re-drove stale webhook log: %s",
                outcome.get("status"),
                extra={"webhook_log_id": str(log_id), "transaction_id": outcome.get("transaction_id")},
            )

    return redriven
