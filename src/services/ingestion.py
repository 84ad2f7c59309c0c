"""
Ingestion pipeline - runs after the ingress has replied 200.

    webhook_logs(received) -> processing -> normalize -> dedup -> reconcile
    -> success | skipped | error

The pipeline always works from the stored record (raw_payload and
signature_valid), so the same code serves the first run, the outbox
recovery worker and admin replays. Audit writes and the reconciliation use
separate sessions: a rolled-back apply never loses its audit outcome.
"""
import asyncio
import logging
import uuid
from typing import Optional

from src.database import async_session_factory
from src.errors import (
    DuplicateTransaction,
    IngestionError,
    PayloadUnparseable,
    SignatureInvalid,
    StorageUnavailable,
)
from src.schemas.purchase_event import FieldMissing, Malformed, PurchaseEvent
from src.services import audit
from src.services.payload_adapters import normalize_payload
from src.services.product_mappings import load_plan_mappings
from src.services.reconciler import reconcile
from src.utils.alerting import AlertType, send_alert
from src.utils.dedup import is_duplicate_transaction
from src.utils.locks import LockTimeoutError, transaction_lock
from src.utils.logging import mask_email

logger = logging.getLogger(__name__)

# Strong references to in-flight pipeline tasks
_background_tasks: set[asyncio.Task] = set()


def schedule_pipeline(log_id: uuid.UUID) -> asyncio.Task:
    """Fire-and-forget the pipeline for a freshly recorded webhook."""
    task = asyncio.create_task(process_webhook_log(log_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def _outcome(
    status: str,
    error: Optional[str] = None,
    event: Optional[PurchaseEvent] = None,
    email: Optional[str] = None,
    transaction_id: Optional[str] = None,
    event_type: Optional[str] = None,
) -> dict:
    return {
        "status": status,
        "error": error,
        "event_type": event.event_type if event else event_type,
        "email": (event.subscriber_email or None) if event else email,
        "transaction_id": (event.transaction_id or None) if event else transaction_id,
    }


async def _apply_event(event: PurchaseEvent) -> dict:
    """Dedup check and reconciliation in one session."""
    key = event.idempotency_key
    async with async_session_factory() as db:
        if await is_duplicate_transaction(db, key):
            raise DuplicateTransaction(key)
        return await reconcile(db, event)


async def _apply_with_lock(event: PurchaseEvent) -> dict:
    try:
        async with transaction_lock(event.idempotency_key):
            return await _apply_event(event)
    except LockTimeoutError:
        # Another delivery holds the lock; the ledger's unique key still protects us
        logger.warning(
            "Transaction lock busy, applying without it",
            extra={"provider": event.provider, "transaction_id": event.transaction_id},
        )
        return await _apply_event(event)


async def run_pipeline(provider: str, payload: dict, signature_valid: bool) -> dict:
    """
    Normalize and apply one stored payload.
    Returns an outcome dict: {"status", "error", "event_type", "email", "transaction_id"}.
    Never raises.
    """
    from src.config import get_settings

    if not signature_valid and get_settings().reject_invalid_signatures:
        err = SignatureInvalid("Signature invalid - event not applied")
        await send_alert(
            AlertType.SIGNATURE_REJECTED,
            f"{provider} webhook recorded but not applied: invalid signature",
            severity="warning",
            extra={"provider": provider},
        )
        return _outcome(err.log_status, str(err))

    try:
        mappings = await load_plan_mappings(provider)
    except Exception as e:
        logger.error("Could not load product mappings: %s", str(e), extra={"provider": provider})
        err = StorageUnavailable(f"Product mappings unavailable: {str(e)[:200]}")
        return _outcome(err.log_status, str(err))

    result = normalize_payload(provider, payload, mappings=mappings)
    if isinstance(result, Malformed):
        err = PayloadUnparseable(f"Malformed payload: {result.detail}")
        return _outcome(err.log_status, str(err))
    if isinstance(result, FieldMissing):
        err = PayloadUnparseable(f"Missing {result.field}: {result.detail}")
        return _outcome(
            err.log_status, str(err),
            email=result.partial_email,
            transaction_id=result.partial_transaction_id,
        )

    event = result.event
    if event.kind == "ignore":
        return _outcome("skipped", f"Event {event.event_type} not handled", event=event)

    try:
        applied = await _apply_with_lock(event)
    except DuplicateTransaction as e:
        logger.info(
            "Duplicate delivery skipped",
            extra={"provider": provider, "transaction_id": e.transaction_id},
        )
        return _outcome(e.log_status, str(e), event=event)
    except IngestionError as e:
        return _outcome(e.log_status, str(e), event=event)
    except Exception as e:
        logger.error(
            "Reconciliation failed for %s: %s",
            mask_email(event.subscriber_email), str(e),
            exc_info=True,
            extra={"provider": provider, "transaction_id": event.transaction_id},
        )
        await send_alert(
            AlertType.RECONCILE_FAILED,
            f"{provider} transaction {event.transaction_id} failed to apply: {str(e)[:200]}",
            extra={"provider": provider, "event_type": event.event_type},
        )
        return _outcome("error", f"Reconciliation failed: {str(e)[:500]}", event=event)

    if applied.get("status") == "skipped":
        return _outcome("skipped", applied.get("message"), event=event)
    return _outcome("success", event=event)


async def process_webhook_log(log_id: uuid.UUID, allow_replay: bool = False) -> dict:
    """
    Run the pipeline for one webhook_logs record and write its outcome.
    allow_replay lets an admin re-run a record that finished in error.
    """
    try:
        async with async_session_factory() as db:
            log = await audit.mark_processing(db, log_id, allow_replay=allow_replay)
            if log is None:
                return {"status": "not_processed", "error": "Record missing or already finished"}
            provider = log.source
            payload = log.raw_payload
            signature_valid = bool(log.signature_valid)
    except Exception as e:
        logger.error(
            "Could not claim webhook log %s: %s", log_id, str(e),
            extra={"webhook_log_id": str(log_id)},
        )
        return {"status": "error", "error": f"Storage unavailable: {str(e)[:200]}"}

    outcome = await run_pipeline(provider, payload, signature_valid)

    try:
        async with async_session_factory() as db:
            await audit.finish(
                db,
                log_id,
                outcome["status"],
                error_message=outcome["error"],
                event_type=outcome["event_type"],
                extracted_email=outcome["email"],
                transaction_id=outcome["transaction_id"],
            )
    except Exception as e:
        # The record stays in processing and the outbox worker re-drives it
        logger.error(
            "Failed to record outcome for webhook log %s: %s", log_id, str(e),
            extra={"webhook_log_id": str(log_id), "provider": provider},
        )
        await send_alert(
            AlertType.STORAGE_UNAVAILABLE,
            f"Could not write outcome '{outcome['status']}' for webhook log {log_id}",
            extra={"provider": provider},
        )

    logger.info(
        "Webhook pipeline done: %s",
        outcome["status"],
        extra={
            "webhook_log_id": str(log_id),
            "provider": provider,
            "transaction_id": outcome["transaction_id"],
        },
    )
    return outcome


async def replay_webhook_log(log_id: uuid.UUID) -> dict:
    """Admin remediation: re-run an error record. Safe to repeat."""
    return await process_webhook_log(log_id, allow_replay=True)
