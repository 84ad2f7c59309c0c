"""
Audit logger - the webhook_logs lifecycle.

Every inbound call gets one record in `received`. Status only moves forward:
received -> processing -> success | error | skipped. Terminal records are
never changed, except that an admin replay may move error -> processing.

Callers pass a session dedicated to the audit write and commit it right
away, so the record survives a rolled-back reconciliation.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.models.webhook_log import WebhookLog
from src.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

STATUS_RANK = {
    "received": 0,
    "processing": 1,
    "success": 2,
    "error": 2,
    "skipped": 2,
}
TERMINAL_STATUSES = ("success", "error", "skipped")


def can_transition(current: str, new: str, allow_replay: bool = False) -> bool:
    """Whether a record in `current` may move to `new`."""
    if new not in STATUS_RANK:
        return False
    if allow_replay and current == "error" and new == "processing":
        return True
    # A stuck record may be picked up again by the outbox worker
    if current == "processing" and new == "processing":
        return True
    return STATUS_RANK[new] > STATUS_RANK.get(current, 0)


async def record_received(
    db: AsyncSession,
    source: str,
    raw_payload: dict,
    payload_hash: str,
    signature_valid: bool,
    channel: str = "direct",
    event_type: str = "unknown",
    extracted_email: Optional[str] = None,
    transaction_id: Optional[str] = None,
    source_ip: Optional[str] = None,
    relay_log_id: Optional[uuid.UUID] = None,
    error_message: Optional[str] = None,
) -> WebhookLog:
    """Record a webhook call in the audit trail before processing."""
    log = WebhookLog(
        source=source,
        channel=channel,
        event_type=(event_type or "unknown")[:80],
        status="received",
        raw_payload=raw_payload,
        payload_hash=payload_hash,
        extracted_email=extracted_email,
        transaction_id=transaction_id[:120] if transaction_id else None,
        signature_valid=signature_valid,
        source_ip=source_ip,
        correlation_id=get_correlation_id(),
        relay_log_id=relay_log_id,
        error_message=error_message,
    )
    db.add(log)
    await db.flush()
    return log


def _apply_status(
    log: WebhookLog,
    status: str,
    error_message: Optional[str] = None,
    allow_replay: bool = False,
) -> bool:
    if not can_transition(log.status, status, allow_replay=allow_replay):
        logger.warning(
            "Refusing webhook log transition %s -> %s",
            log.status, status,
            extra={"webhook_log_id": str(log.id), "provider": log.source},
        )
        return False
    log.status = status
    log.updated_at = datetime.now(timezone.utc)
    if status in TERMINAL_STATUSES:
        log.processed_at = datetime.now(timezone.utc)
        log.error_message = error_message
    elif status == "processing":
        log.processed_at = None
        log.error_message = None
    return True


async def mark_processing(
    db: AsyncSession,
    log_id: uuid.UUID,
    allow_replay: bool = False,
) -> Optional[WebhookLog]:
    """
    Claim a record for processing and commit.
    Returns None when the record is missing or already finished.
    """
    log = await db.get(WebhookLog, log_id)
    if log is None:
        logger.error("Webhook log %s not found", log_id)
        return None
    if not _apply_status(log, "processing", allow_replay=allow_replay):
        return None
    await db.commit()
    return log


async def finish(
    db: AsyncSession,
    log_id: uuid.UUID,
    status: str,
    error_message: Optional[str] = None,
    event_type: Optional[str] = None,
    extracted_email: Optional[str] = None,
    transaction_id: Optional[str] = None,
    forward_status_code: Optional[int] = None,
) -> Optional[WebhookLog]:
    """Write a terminal status (success, error, skipped) and commit."""
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Not a terminal status: {status}")

    log = await db.get(WebhookLog, log_id)
    if log is None:
        logger.error("Webhook log %s not found", log_id)
        return None

    if not _apply_status(log, status, error_message=error_message):
        return log

    if event_type and log.event_type in (None, "", "unknown"):
        log.event_type = event_type[:80]
    if extracted_email and not log.extracted_email:
        log.extracted_email = extracted_email
    if transaction_id and not log.transaction_id:
        log.transaction_id = transaction_id[:120]
    if forward_status_code is not None:
        log.forward_status_code = forward_status_code

    await db.commit()
    logger.info(
        "Webhook log finished: %s",
        status,
        extra={
            "webhook_log_id": str(log.id),
            "provider": log.source,
            "channel": log.channel,
            "transaction_id": log.transaction_id,
        },
    )
    return log
