"""
Subscription reconciler - apply a normalized PurchaseEvent to local state.

Grant: upsert the user account by email, set plan and expiration, append one
ledger row. Revoke: downgrade the account and append a ledger row keyed
"{transaction_id}:{status}". Everything happens in one transaction; any
failure rolls back the whole apply and is re-raised for the audit record.

The ledger's UNIQUE transaction_id is the final idempotency guarantee. A
concurrent duplicate that slipped past the advisory check fails the insert
and is reported as DuplicateTransaction.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.errors import DuplicateTransaction
from src.models.subscription import SubscriptionRecord
from src.models.user_account import UserAccount
from src.schemas.purchase_event import PurchaseEvent
from src.utils.logging import mask_email

logger = logging.getLogger(__name__)

DEFAULT_DURATION_DAYS = 30


def compute_expiration(
    start: datetime,
    duration_days: Optional[int],
    is_lifetime: bool = False,
    explicit: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Expiration for a grant. None for lifetime plans. A provider-sent
    expiration wins; whole years are added as calendar years.
    """
    if is_lifetime:
        return None
    if explicit is not None:
        return explicit
    days = duration_days or DEFAULT_DURATION_DAYS
    if days % 365 == 0:
        return start + relativedelta(years=days // 365)
    return start + timedelta(days=days)


def _insert_for(db: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if db.get_bind().dialect.name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        from sqlalchemy.dialects.postgresql import insert
    return insert


async def upsert_user(db: AsyncSession, email: str, name: Optional[str] = None) -> UserAccount:
    """
    Get or create the account for an email.
    INSERT ... ON CONFLICT (email) DO NOTHING makes concurrent first
    purchases for the same email converge on one row.
    """
    now = datetime.now(timezone.utc)
    insert = _insert_for(db)
    stmt = insert(UserAccount).values(
        id=uuid.uuid4(),
        email=email,
        name=name,
        username=email.split("@", 1)[0],
        access_level="free",
        lifetime_access=False,
        created_at=now,
        updated_at=now,
    ).on_conflict_do_nothing(index_elements=["email"])
    await db.execute(stmt)

    result = await db.execute(
        select(UserAccount)
        .where(UserAccount.email == email)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _append_ledger(db: AsyncSession, record: SubscriptionRecord) -> None:
    db.add(record)
    try:
        await db.flush()
    except IntegrityError as e:
        logger.info(
            "Ledger insert hit unique constraint: %s",
            record.transaction_id,
            extra={"transaction_id": record.transaction_id},
        )
        raise DuplicateTransaction(record.transaction_id) from e


async def apply_grant(db: AsyncSession, event: PurchaseEvent) -> dict:
    """Grant or extend premium access. Does not commit."""
    email = event.subscriber_email.strip().lower()
    user = await upsert_user(db, email, event.buyer_name)

    start = datetime.now(timezone.utc)
    lifetime = bool(user.lifetime_access) or event.is_lifetime
    expiration = compute_expiration(
        start, event.plan_duration_days, is_lifetime=lifetime, explicit=event.expires_at,
    )

    if user.access_level != "admin":
        user.access_level = "premium"
    user.plan_type = "premium_lifetime" if lifetime else event.plan_type
    user.subscription_source = event.provider
    user.subscription_start_date = start
    user.subscription_expiration_date = expiration
    user.lifetime_access = lifetime
    if event.buyer_name and not user.name:
        user.name = event.buyer_name
    if event.subscription_code:
        user.external_subscriber_code = event.subscription_code

    record = SubscriptionRecord(
        user_id=user.id,
        plan_type=event.plan_type,
        status="active",
        start_date=start,
        end_date=expiration,
        origin_provider=event.provider,
        transaction_id=event.idempotency_key,
        last_event=event.event_type,
        subscription_code=event.subscription_code,
        plan_id=event.plan_id,
        payment_method=event.payment_method,
        price=event.amount,
        currency=event.currency,
        raw_webhook_payload=event.raw_payload,
    )
    await _append_ledger(db, record)

    logger.info(
        "Granted %s to %s until %s",
        user.plan_type,
        mask_email(email),
        expiration.isoformat() if expiration else "lifetime",
        extra={"provider": event.provider, "transaction_id": event.transaction_id},
    )
    return {
        "status": "success",
        "action": "granted",
        "user_id": str(user.id),
        "subscription_id": str(record.id),
        "expires_at": expiration.isoformat() if expiration else None,
    }


async def _has_other_active_grant(
    db: AsyncSession,
    user_id: uuid.UUID,
    transaction_id: str,
    now: datetime,
) -> bool:
    """True when another unrevoked, unexpired grant still covers the user."""
    result = await db.execute(
        select(SubscriptionRecord).where(SubscriptionRecord.user_id == user_id)
    )
    rows = list(result.scalars().all())
    revoked = {
        row.transaction_id.rsplit(":", 1)[0]
        for row in rows
        if row.status != "active"
    }
    for row in rows:
        if row.status != "active" or row.transaction_id == transaction_id:
            continue
        if row.transaction_id in revoked:
            continue
        end = row.end_date
        if end is not None and end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        if end is None or end > now:
            return True
    return False


async def apply_revoke(db: AsyncSession, event: PurchaseEvent) -> dict:
    """Revoke access for a refund, chargeback, cancellation or expiry. Does not commit."""
    email = event.subscriber_email.strip().lower()
    result = await db.execute(select(UserAccount).where(UserAccount.email == email))
    user = result.scalar_one_or_none()
    if user is None:
        logger.info(
            "Revoke for unknown account %s - nothing to do",
            mask_email(email),
            extra={"provider": event.provider, "transaction_id": event.transaction_id},
        )
        return {"status": "skipped", "message": "No account for subscriber email"}

    now = datetime.now(timezone.utc)
    status = event.revoke_status or "cancelled"

    keep_access = user.access_level == "admin" or await _has_other_active_grant(
        db, user.id, event.transaction_id, now,
    )
    if not keep_access:
        user.access_level = "free"
        user.lifetime_access = False
        user.subscription_expiration_date = now

    record = SubscriptionRecord(
        user_id=user.id,
        plan_type=user.plan_type or event.plan_type,
        status=status,
        start_date=now,
        end_date=now,
        origin_provider=event.provider,
        transaction_id=event.idempotency_key,
        last_event=event.event_type,
        subscription_code=event.subscription_code,
        plan_id=event.plan_id,
        payment_method=event.payment_method,
        price=event.amount,
        currency=event.currency,
        raw_webhook_payload=event.raw_payload,
    )
    await _append_ledger(db, record)

    logger.info(
        "Revoked (%s) access for %s%s",
        status,
        mask_email(email),
        " - other active subscription kept" if keep_access else "",
        extra={"provider": event.provider, "transaction_id": event.transaction_id},
    )
    return {
        "status": "success",
        "action": "revoked" if not keep_access else "recorded",
        "user_id": str(user.id),
        "subscription_id": str(record.id),
    }


async def reconcile(db: AsyncSession, event: PurchaseEvent) -> dict:
    """
    Apply one event in a single transaction.
    Returns {"status": "success"|"skipped", ...}; raises on failure after rollback.
    """
    if event.kind == "ignore":
        return {"status": "skipped", "message": f"Event {event.event_type} not handled"}

    try:
        if event.kind == "grant":
            result = await apply_grant(db, event)
        else:
            result = await apply_revoke(db, event)
        await db.commit()
        return result
    except Exception:
        await db.rollback()
        raise
