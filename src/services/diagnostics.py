"""
Diagnostics queries over webhook_logs - the admin read path.

search_logs answers "why didn't this customer get access?": it finds every
webhook that mentions an email, including payloads where extraction failed
and extracted_email is empty.
"""
import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import String, cast, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.webhook_log import WebhookLog
from src.utils.payload_search import find_term

logger = logging.getLogger(__name__)

MAX_SEARCH_RESULTS = 200


async def search_logs(db: AsyncSession, term: str, limit: int = 50) -> dict:
    """
    Find webhook logs mentioning `term`.

    Direct hits on extracted_email come first (match_type=direct_field),
    then records whose serialized payload contains the term
    (match_type=text_match) with the JSON path of the hit when found.
    """
    needle = (term or "").strip().lower()
    limit = max(1, min(limit, MAX_SEARCH_RESULTS))
    matches: list[dict] = []
    seen: set[uuid.UUID] = set()

    direct = await db.execute(
        select(WebhookLog)
        .where(func.lower(WebhookLog.extracted_email) == needle)
        .order_by(WebhookLog.created_at.desc())
        .limit(limit)
    )
    for log in direct.scalars().all():
        seen.add(log.id)
        matches.append({
            "log": log.to_dict(),
            "match_type": "direct_field",
            "match_path": "extracted_email",
        })

    remaining = limit - len(matches)
    if remaining > 0 and needle:
        query = (
            select(WebhookLog)
            .where(func.lower(cast(WebhookLog.raw_payload, String)).contains(needle, autoescape=True))
            .order_by(WebhookLog.created_at.desc())
            .limit(remaining + len(seen))
        )
        text_hits = await db.execute(query)
        for log in text_hits.scalars().all():
            if log.id in seen:
                continue
            seen.add(log.id)
            matches.append({
                "log": log.to_dict(),
                "match_type": "text_match",
                "match_path": find_term(log.raw_payload, needle),
            })
            if len(matches) >= limit:
                break

    logger.info("Diagnostics search returned %d matches", len(matches))
    return {"term": term, "total": len(matches), "matches": matches}


async def list_logs(
    db: AsyncSession,
    source: Optional[str] = None,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    """Paginated webhook logs, newest first."""
    conditions = []
    if source:
        conditions.append(WebhookLog.source == source)
    if status:
        conditions.append(WebhookLog.status == status)
    if event_type:
        conditions.append(WebhookLog.event_type == event_type)

    count_query = select(func.count(WebhookLog.id))
    query = select(WebhookLog)
    if conditions:
        count_query = count_query.where(*conditions)
        query = query.where(*conditions)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(WebhookLog.created_at.desc()).offset(offset).limit(limit)
    )
    logs = [log.to_dict(include_payload=False) for log in result.scalars().all()]

    return {
        "total": total,
        "logs": logs,
        "limit": limit,
        "offset": offset,
        "pages": math.ceil(total / limit) if limit else 0,
    }


async def get_log(db: AsyncSession, log_id: uuid.UUID) -> Optional[WebhookLog]:
    return await db.get(WebhookLog, log_id)


async def get_status(db: AsyncSession) -> dict:
    """Pipeline overview: per-status counts, stuck records, recent calls, credential flags."""
    from src.config import get_settings
    from src.services.credentials import SUPPORTED_PROVIDERS, get_provider_credentials

    settings = get_settings()

    counts_result = await db.execute(
        select(WebhookLog.status, func.count(WebhookLog.id)).group_by(WebhookLog.status)
    )
    status_counts = {row[0]: row[1] for row in counts_result.all()}

    stale_cutoff = datetime.now(timezone.utc) - timedelta(seconds=settings.outbox_stale_seconds)
    stuck = (await db.execute(
        select(func.count(WebhookLog.id)).where(
            WebhookLog.status.in_(("received", "processing")),
            WebhookLog.updated_at < stale_cutoff,
        )
    )).scalar() or 0

    recent_result = await db.execute(
        select(WebhookLog).order_by(WebhookLog.created_at.desc()).limit(10)
    )
    recent = [log.to_dict(include_payload=False) for log in recent_result.scalars().all()]

    providers = {}
    for provider in SUPPORTED_PROVIDERS:
        creds = await get_provider_credentials(provider)
        providers[provider] = {
            "webhook_secret_configured": bool(creds.webhook_secret),
            "api_credentials_configured": creds.has_api_credentials,
            "environment": creds.environment,
            "source": creds.origin,
        }

    return {
        "status_counts": status_counts,
        "stuck_count": stuck,
        "recent": recent,
        "providers": providers,
        "reject_invalid_signatures": settings.reject_invalid_signatures,
    }
