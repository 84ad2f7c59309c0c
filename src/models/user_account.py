"""
User account - shared with the rest of the application, which reads
access_level and subscription_expiration_date for access control.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from src.database import Base


class UserAccount(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    username: Mapped[Optional[str]] = mapped_column(String(255))

    access_level: Mapped[str] = mapped_column(
        String(20), nullable=False, default="free"
    )  # free, premium, admin
    plan_type: Mapped[Optional[str]] = mapped_column(
        String(50)
    )  # premium_30, premium_180, premium_365, premium_lifetime, premium
    subscription_source: Mapped[Optional[str]] = mapped_column(String(30))  # hotmart, doppus
    subscription_start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    subscription_expiration_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    lifetime_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    external_subscriber_code: Mapped[Optional[str]] = mapped_column(String(120))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    subscriptions = relationship("SubscriptionRecord", back_populates="user", lazy="noload")

    def __repr__(self) -> str:
        return f"<UserAccount {self.id} {self.access_level}>"
