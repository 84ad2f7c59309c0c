"""
Webhook ingress - POST /webhook/{provider} for Hotmart and Doppus.

Order of work:
1. Read the raw body and verify the provider signature
2. Audit trail (webhook_logs, status=received), committed before replying
3. Reply 200 and run the pipeline in a background task

Providers retry on anything but a fast 200, so this endpoint always answers
200 for a known provider. Outcomes live on the webhook_logs record.
"""
import logging
import uuid
from typing import Mapping, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.schemas.api_responses import WebhookAck
from src.services import audit
from src.services.credentials import SUPPORTED_PROVIDERS, get_provider_credentials
from src.services.ingestion import schedule_pipeline
from src.services.payload_adapters import decode_body, summarize_payload
from src.utils.alerting import AlertType, send_alert
from src.utils.logging import mask_email
from src.utils.webhook_signatures import compute_payload_hash, verify_provider_signature

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])

RELAY_LOG_HEADER = "X-Relay-Log-Id"


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def inspect_webhook(
    provider: str,
    body: bytes,
    headers: Mapping[str, str],
) -> dict:
    """
    Decode, hash and verify one inbound webhook body.
    Shared by the main ingress and the relay listener. Never raises.
    """
    payload, parse_error = decode_body(body, headers.get("content-type"))
    summary = summarize_payload(provider, payload)
    credentials = await get_provider_credentials(provider)
    signature_valid = verify_provider_signature(
        provider, headers, body, credentials.webhook_secret, body_token=summary["body_token"],
    )
    return {
        "payload": payload,
        "payload_hash": compute_payload_hash(body),
        "signature_valid": signature_valid,
        "parse_error": parse_error,
        "event_type": summary["event_type"],
        "email": summary["email"],
        "transaction_id": summary["transaction_id"],
    }


def _parse_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def provider_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Billing notification from a payment provider."""
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=404, detail="Unknown provider")

    body = await request.body()
    inbound = await inspect_webhook(provider, body, request.headers)
    relay_log_id = _parse_uuid(request.headers.get(RELAY_LOG_HEADER))

    if not inbound["signature_valid"]:
        logger.warning(
            "Invalid webhook signature: provider=%s ip=%s",
            provider, client_ip(request),
            extra={"provider": provider, "transaction_id": inbound["transaction_id"]},
        )

    try:
        log = await audit.record_received(
            db,
            source=provider,
            channel="direct",
            raw_payload=inbound["payload"],
            payload_hash=inbound["payload_hash"],
            signature_valid=inbound["signature_valid"],
            event_type=inbound["event_type"],
            extracted_email=inbound["email"],
            transaction_id=inbound["transaction_id"],
            source_ip=client_ip(request),
            relay_log_id=relay_log_id,
            error_message=inbound["parse_error"],
        )
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(
            "Failed to record %s webhook (hash=%s): %s",
            provider, inbound["payload_hash"], str(e),
            extra={"provider": provider, "transaction_id": inbound["transaction_id"]},
        )
        await send_alert(
            AlertType.STORAGE_UNAVAILABLE,
            f"{provider} webhook could not be recorded (hash={inbound['payload_hash'][:16]})",
            extra={"provider": provider, "email": mask_email(inbound["email"])},
        )
        return WebhookAck(status="error", message="Webhook received but could not be recorded")

    schedule_pipeline(log.id)

    logger.info(
        "Webhook received: %s %s",
        provider, inbound["event_type"],
        extra={
            "provider": provider,
            "webhook_log_id": str(log.id),
            "transaction_id": inbound["transaction_id"],
            "channel": "relay" if relay_log_id else "direct",
        },
    )
    return WebhookAck(status="received", message="Webhook received", log_id=str(log.id))
