"""
Request bodies for the product mapping admin endpoints.
"""
from typing import Optional
from pydantic import BaseModel, Field


class ProductMappingCreate(BaseModel):
    provider: str  # hotmart, doppus
    product_id: str = Field(min_length=1, max_length=100)
    product_name: Optional[str] = Field(default=None, max_length=255)
    plan_type: str = Field(min_length=1, max_length=30)
    # Omitted: the plan table's duration for known plan types, else 30
    duration_days: Optional[int] = Field(default=None, ge=1)
    is_lifetime: bool = False
    is_active: bool = True


class ProductMappingUpdate(BaseModel):
    """Partial update: only the fields sent are changed."""
    product_name: Optional[str] = Field(default=None, max_length=255)
    plan_type: Optional[str] = Field(default=None, min_length=1, max_length=30)
    duration_days: Optional[int] = Field(default=None, ge=1)
    is_lifetime: Optional[bool] = None
    is_active: Optional[bool] = None
