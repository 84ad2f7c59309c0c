"""
Diagnostics endpoints - admin-only read path over the webhook audit trail,
manual replay of failed records and live provider lookups.
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.auth import get_current_admin
from src.database import get_db
from src.errors import DownstreamAuthFailure
from src.models.user_account import UserAccount
from src.schemas.api_responses import (
    DiagnosticSearchResponse,
    ReplayResponse,
    WebhookLogListResponse,
)
from src.services import diagnostics
from src.services.credentials import SUPPORTED_PROVIDERS

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/diagnostics", tags=["diagnostics"])


def _log_uuid(log_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(log_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid log id")


@router.get("/search", response_model=DiagnosticSearchResponse)
async def search_webhook_logs(
    email: str = Query(..., min_length=3),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    admin: UserAccount = Depends(get_current_admin),
):
    """Every webhook mentioning an email, direct field hits first."""
    return await diagnostics.search_logs(db, email, limit=limit)


@router.get("/logs", response_model=WebhookLogListResponse)
async def list_webhook_logs(
    source: Optional[str] = None,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    admin: UserAccount = Depends(get_current_admin),
):
    return await diagnostics.list_logs(
        db, source=source, status=status, event_type=event_type, limit=limit, offset=offset,
    )


@router.get("/logs/{log_id}")
async def get_webhook_log(
    log_id: str,
    db: AsyncSession = Depends(get_db),
    admin: UserAccount = Depends(get_current_admin),
):
    log = await diagnostics.get_log(db, _log_uuid(log_id))
    if log is None:
        raise HTTPException(status_code=404, detail="Webhook log not found")
    return log.to_dict()


@router.get("/status")
async def pipeline_status(
    db: AsyncSession = Depends(get_db),
    admin: UserAccount = Depends(get_current_admin),
):
    return await diagnostics.get_status(db)


@router.post("/logs/{log_id}/replay", response_model=ReplayResponse)
async def replay_webhook_log(
    log_id: str,
    db: AsyncSession = Depends(get_db),
    admin: UserAccount = Depends(get_current_admin),
):
    """
    Re-run the pipeline for a record that finished in error.
    Idempotent: an already-applied transaction comes back as skipped.
    """
    log_uuid = _log_uuid(log_id)
    log = await diagnostics.get_log(db, log_uuid)
    if log is None:
        raise HTTPException(status_code=404, detail="Webhook log not found")
    if log.status != "error":
        raise HTTPException(
            status_code=409,
            detail=f"Only error records can be replayed (status={log.status})",
        )

    from src.services.ingestion import replay_webhook_log as run_replay

    logger.info(
        "Admin %s replaying webhook log", admin.id,
        extra={"webhook_log_id": log_id, "provider": log.source},
    )
    outcome = await run_replay(log_uuid)
    return ReplayResponse(
        log_id=log_id,
        status=outcome["status"],
        error_message=outcome.get("error"),
    )


@router.get("/providers/{provider}/subscriptions")
async def provider_subscriptions(
    provider: str,
    email: str = Query(..., min_length=3),
    admin: UserAccount = Depends(get_current_admin),
):
    """Live lookup against the provider's API."""
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=404, detail="Unknown provider")

    from src.services.provider_api import get_api_client

    try:
        client = await get_api_client(provider)
        return await client.lookup(email.strip().lower())
    except DownstreamAuthFailure as e:
        logger.warning("Provider lookup failed: %s", str(e), extra={"provider": provider})
        raise HTTPException(status_code=502, detail=str(e))
