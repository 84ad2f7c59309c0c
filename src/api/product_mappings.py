"""
Product mapping endpoints - admin-only CRUD over which plan each provider
product or offer grants.
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.auth import get_current_admin
from src.database import get_db
from src.models.user_account import UserAccount
from src.schemas.product_mapping import ProductMappingCreate, ProductMappingUpdate
from src.services import product_mappings
from src.services.credentials import SUPPORTED_PROVIDERS

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin/product-mappings", tags=["product-mappings"])


def _mapping_uuid(mapping_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(mapping_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid mapping id")


@router.get("")
async def list_product_mappings(
    provider: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    admin: UserAccount = Depends(get_current_admin),
):
    mappings = await product_mappings.list_mappings(db, provider=provider)
    return {"total": len(mappings), "mappings": [m.to_dict() for m in mappings]}


@router.post("", status_code=201)
async def create_product_mapping(
    body: ProductMappingCreate,
    db: AsyncSession = Depends(get_db),
    admin: UserAccount = Depends(get_current_admin),
):
    if body.provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=404, detail="Unknown provider")
    try:
        mapping = await product_mappings.create_mapping(db, body)
    except product_mappings.DuplicateProductMapping as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info("Admin %s created product mapping %s", admin.id, mapping.id, extra={"provider": body.provider})
    return mapping.to_dict()


@router.get("/{mapping_id}")
async def get_product_mapping(
    mapping_id: str,
    db: AsyncSession = Depends(get_db),
    admin: UserAccount = Depends(get_current_admin),
):
    mapping = await product_mappings.get_mapping(db, _mapping_uuid(mapping_id))
    if mapping is None:
        raise HTTPException(status_code=404, detail="Product mapping not found")
    return mapping.to_dict()


@router.put("/{mapping_id}")
async def update_product_mapping(
    mapping_id: str,
    body: ProductMappingUpdate,
    db: AsyncSession = Depends(get_db),
    admin: UserAccount = Depends(get_current_admin),
):
    mapping = await product_mappings.update_mapping(db, _mapping_uuid(mapping_id), body)
    if mapping is None:
        raise HTTPException(status_code=404, detail="Product mapping not found")
    return mapping.to_dict()


@router.delete("/{mapping_id}")
async def delete_product_mapping(
    mapping_id: str,
    db: AsyncSession = Depends(get_db),
    admin: UserAccount = Depends(get_current_admin),
):
    if not await product_mappings.delete_mapping(db, _mapping_uuid(mapping_id)):
        raise HTTPException(status_code=404, detail="Product mapping not found")
    logger.info("Admin %s deleted product mapping %s", admin.id, mapping_id)
    return {"deleted": True, "id": mapping_id}
