"""
Relay listener - a second webhook entry point running in its own process.

Providers can be pointed at the relay when the main application is being
deployed or is unstable. The relay records the call in webhook_logs
(channel=relay), replies 200 at once, then forwards the raw body and the
signature headers to MAIN_APP_INTERNAL_URL over loopback. Its own record
ends in success on a 2xx forward and error otherwise; error records can be
replayed from the diagnostics endpoints like any other.

Run with:
    python -m src.relay
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Mapping, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.health import router as health_router
from src.api.webhooks import RELAY_LOG_HEADER, client_ip, inspect_webhook
from src.config import get_settings
from src.database import async_session_factory, get_db
from src.schemas.api_responses import WebhookAck
from src.services import audit
from src.services.credentials import SUPPORTED_PROVIDERS
from src.utils.alerting import AlertType, send_alert
from src.utils.logging import configure_structured_logging, get_correlation_id
from src.utils.webhook_signatures import SIGNATURE_HEADERS

logger = logging.getLogger("subsync.relay")
router = APIRouter(tags=["relay"])

_forward_tasks: set[asyncio.Task] = set()


def build_forward_headers(
    provider: str,
    headers: Mapping[str, str],
    relay_log_id: Optional[uuid.UUID],
    source_ip: Optional[str],
) -> dict:
    """Headers passed on to the main app: content type, signatures, tracing."""
    forwarded = {"Content-Type": headers.get("content-type") or "application/json"}
    for name in SIGNATURE_HEADERS.get(provider, ()):
        value = headers.get(name)
        if value:
            forwarded[name] = value
    if relay_log_id:
        forwarded[RELAY_LOG_HEADER] = str(relay_log_id)
    if source_ip:
        forwarded["X-Forwarded-For"] = source_ip
    cid = get_correlation_id()
    if cid:
        forwarded["X-Correlation-ID"] = cid
    return forwarded


async def forward_webhook(
    provider: str,
    body: bytes,
    headers: dict,
    relay_log_id: Optional[uuid.UUID],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[int]:
    """
    Forward one webhook to the main app and record the result on the relay's
    own record. Returns the main app's HTTP status, None when unreachable.
    """
    settings = get_settings()
    url = f"{settings.main_app_internal_url.rstrip('/')}/webhook/{provider}"
    timeout = settings.relay_forward_timeout_seconds

    status_code: Optional[int] = None
    error: Optional[str] = None
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(url, content=body, headers=headers)
        status_code = response.status_code
        if not 200 <= status_code < 300:
            error = f"Main app returned HTTP {status_code}"
    except httpx.TimeoutException:
        error = f"Forward to main app timed out after {timeout}s"
    except httpx.HTTPError as e:
        error = f"Forward to main app failed: {str(e)[:300]}"

    if error:
        logger.error(
            "Relay forward failed: %s", error,
            extra={"provider": provider, "webhook_log_id": str(relay_log_id) if relay_log_id else None},
        )
        await send_alert(
            AlertType.RELAY_FORWARD_FAILED,
            f"{provider} webhook not delivered to main app: {error}",
            extra={"relay_log_id": str(relay_log_id) if relay_log_id else "unrecorded"},
        )

    if relay_log_id:
        try:
            async with async_session_factory() as db:
                await audit.finish(
                    db,
                    relay_log_id,
                    "error" if error else "success",
                    error_message=error,
                    forward_status_code=status_code,
                )
        except Exception as e:
            logger.error(
                "Failed to record relay forward result: %s", str(e),
                extra={"provider": provider, "webhook_log_id": str(relay_log_id)},
            )

    return status_code


def schedule_forward(
    provider: str,
    body: bytes,
    headers: dict,
    relay_log_id: Optional[uuid.UUID],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> asyncio.Task:
    task = asyncio.create_task(forward_webhook(provider, body, headers, relay_log_id, transport))
    _forward_tasks.add(task)
    task.add_done_callback(_forward_tasks.discard)
    return task


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def relay_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Record, acknowledge and forward a billing notification."""
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=404, detail="Unknown provider")

    body = await request.body()
    inbound = await inspect_webhook(provider, body, request.headers)
    source_ip = client_ip(request)

    relay_log_id: Optional[uuid.UUID] = None
    try:
        log = await audit.record_received(
            db,
            source=provider,
            channel="relay",
            raw_payload=inbound["payload"],
            payload_hash=inbound["payload_hash"],
            signature_valid=inbound["signature_valid"],
            event_type=inbound["event_type"],
            extracted_email=inbound["email"],
            transaction_id=inbound["transaction_id"],
            source_ip=source_ip,
            error_message=inbound["parse_error"],
        )
        await db.commit()
        relay_log_id = log.id
    except Exception as e:
        # Forwarding still matters more than our own record
        await db.rollback()
        logger.error(
            "Relay could not record %s webhook (hash=%s): %s",
            provider, inbound["payload_hash"], str(e),
            extra={"provider": provider, "channel": "relay"},
        )

    headers = build_forward_headers(provider, request.headers, relay_log_id, source_ip)
    schedule_forward(provider, body, headers, relay_log_id, request.app.state.forward_transport)

    return WebhookAck(
        status="received",
        message="Webhook received by relay",
        log_id=str(relay_log_id) if relay_log_id else None,
    )


@asynccontextmanager
async def relay_lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "SubSync relay starting on port %d, forwarding to %s",
        settings.relay_port, settings.main_app_internal_url,
    )
    from src.main import init_sentry
    init_sentry(settings)

    yield

    if _forward_tasks:
        await asyncio.wait(list(_forward_tasks), timeout=settings.relay_forward_timeout_seconds)
    logger.info("SubSync relay shutdown complete")


def create_relay_app(forward_transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Relay application factory. forward_transport replaces the network in tests."""
    from src.main import CorrelationIdMiddleware

    settings = get_settings()
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="SubSync relay",
        description="Isolated webhook listener forwarding to the main application",
        lifespan=relay_lifespan,
    )
    application.state.forward_transport = forward_transport
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(router)
    application.include_router(health_router)
    return application


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_relay_app(), host=settings.relay_host, port=settings.relay_port, log_level="info")


if __name__ == "__main__":
    main()
