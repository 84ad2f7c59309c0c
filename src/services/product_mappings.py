"""
Product mappings - which plan a provider product or offer grants.

Rows are managed through the admin API (src.api.product_mappings) and loaded
fresh for every pipeline run, so an edit applies to the next webhook. A
product without a mapping falls back to plan name matching
(src.services.plans).
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.product_mapping import ProductMapping
from src.schemas.product_mapping import ProductMappingCreate, ProductMappingUpdate
from src.services.plans import DEFAULT_DURATION_DAYS, PLAN_TABLE, PlanResolution

logger = logging.getLogger(__name__)


class DuplicateProductMapping(Exception):
    def __init__(self, provider: str, product_id: str):
        super().__init__(f"A mapping for {provider} product {product_id} already exists")
        self.provider = provider
        self.product_id = product_id


def _plan_fields(plan_type: str, duration_days: Optional[int], is_lifetime: bool) -> dict:
    """Fill duration from the plan table and keep lifetime rows without one."""
    plan_type = plan_type.strip()
    if plan_type in PLAN_TABLE and PLAN_TABLE[plan_type] is None:
        is_lifetime = True
    if is_lifetime:
        return {"plan_type": plan_type, "duration_days": None, "is_lifetime": True}
    if duration_days is None:
        duration_days = PLAN_TABLE.get(plan_type) or DEFAULT_DURATION_DAYS
    return {"plan_type": plan_type, "duration_days": duration_days, "is_lifetime": False}


def to_plan(mapping: ProductMapping) -> PlanResolution:
    if mapping.is_lifetime:
        return PlanResolution(plan_type=mapping.plan_type, duration_days=None, is_lifetime=True)
    return PlanResolution(
        plan_type=mapping.plan_type,
        duration_days=mapping.duration_days or DEFAULT_DURATION_DAYS,
    )


async def load_plan_mappings(provider: str) -> dict[str, PlanResolution]:
    """Active mappings for one provider, keyed by product/offer id."""
    from src.database import async_session_factory

    async with async_session_factory() as db:
        result = await db.execute(
            select(ProductMapping).where(
                ProductMapping.provider == provider,
                ProductMapping.is_active == True,  # noqa: E712
            )
        )
        return {row.product_id: to_plan(row) for row in result.scalars().all()}


async def list_mappings(db: AsyncSession, provider: Optional[str] = None) -> list[ProductMapping]:
    query = select(ProductMapping).order_by(ProductMapping.provider, ProductMapping.product_id)
    if provider:
        query = query.where(ProductMapping.provider == provider)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_mapping(db: AsyncSession, mapping_id: uuid.UUID) -> Optional[ProductMapping]:
    return await db.get(ProductMapping, mapping_id)


async def create_mapping(db: AsyncSession, data: ProductMappingCreate) -> ProductMapping:
    """Insert a mapping. Raises DuplicateProductMapping for a known (provider, product_id)."""
    product_id = data.product_id.strip()
    mapping = ProductMapping(
        provider=data.provider,
        product_id=product_id,
        product_name=data.product_name,
        is_active=data.is_active,
        **_plan_fields(data.plan_type, data.duration_days, data.is_lifetime),
    )
    db.add(mapping)
    try:
        await db.flush()
    except IntegrityError as e:
        raise DuplicateProductMapping(data.provider, product_id) from e

    logger.info(
        "Product mapping created: %s -> %s", product_id, mapping.plan_type,
        extra={"provider": data.provider},
    )
    return mapping


async def update_mapping(
    db: AsyncSession, mapping_id: uuid.UUID, changes: ProductMappingUpdate,
) -> Optional[ProductMapping]:
    """Apply the fields that were sent. None when the mapping does not exist."""
    mapping = await db.get(ProductMapping, mapping_id)
    if mapping is None:
        return None

    sent = changes.model_dump(exclude_unset=True)
    if "product_name" in sent:
        mapping.product_name = sent["product_name"]
    if "is_active" in sent and sent["is_active"] is not None:
        mapping.is_active = sent["is_active"]

    if {"plan_type", "duration_days", "is_lifetime"} & sent.keys():
        plan_type = sent.get("plan_type") or mapping.plan_type
        is_lifetime = sent["is_lifetime"] if sent.get("is_lifetime") is not None else mapping.is_lifetime
        if "duration_days" in sent:
            duration_days = sent["duration_days"]
        elif "plan_type" in sent or "is_lifetime" in sent:
            duration_days = None
        else:
            duration_days = mapping.duration_days
        for field, value in _plan_fields(plan_type, duration_days, is_lifetime).items():
            setattr(mapping, field, value)

    await db.flush()
    logger.info(
        "Product mapping updated: %s -> %s", mapping.product_id, mapping.plan_type,
        extra={"provider": mapping.provider},
    )
    return mapping


async def delete_mapping(db: AsyncSession, mapping_id: uuid.UUID) -> bool:
    mapping = await db.get(ProductMapping, mapping_id)
    if mapping is None:
        return False
    await db.delete(mapping)
    await db.flush()
    logger.info("Product mapping deleted: %s", mapping.product_id, extra={"provider": mapping.provider})
    return True
