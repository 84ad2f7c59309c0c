"""
Product mappings - admin-managed plan for a provider product or offer id.
Checked before plan name matching when a purchase is normalized.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Boolean, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class ProductMapping(Base):
    __tablename__ = "product_mappings"
    __table_args__ = (
        UniqueConstraint("provider", "product_id", name="uq_product_mappings_provider_product"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(30), nullable=False)  # hotmart, doppus
    # Provider product id, or an offer/plan id for offer-specific plans
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    product_name: Mapped[Optional[str]] = mapped_column(String(255))
    plan_type: Mapped[str] = mapped_column(String(30), nullable=False)
    duration_days: Mapped[Optional[int]] = mapped_column(Integer)  # None for lifetime
    is_lifetime: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "provider": self.provider,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "plan_type": self.plan_type,
            "duration_days": self.duration_days,
            "is_lifetime": self.is_lifetime,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
