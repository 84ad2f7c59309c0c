"""
Webhook audit trail - one row per inbound HTTP call, written before processing.
Rows are never deleted; status only moves forward (see src.services.audit).
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, Boolean, Integer, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from src.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source = Column(String(30), nullable=False, index=True)  # hotmart, doppus
    channel = Column(
        String(10), nullable=False, default="direct", server_default="direct"
    )  # direct, relay
    event_type = Column(String(80), nullable=False, default="unknown")
    status = Column(
        String(20), nullable=False, default="received", server_default="received", index=True
    )  # received, processing, success, error, skipped
    raw_payload = Column(JSONB, nullable=False)
    payload_hash = Column(String(64), nullable=False, index=True)
    extracted_email = Column(String(255), nullable=True, index=True)
    transaction_id = Column(String(120), nullable=True, index=True)
    signature_valid = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    source_ip = Column(String(64), nullable=True)
    correlation_id = Column(String(64), nullable=True, index=True)
    relay_log_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    forward_status_code = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_webhook_logs_status_created", "status", "created_at"),
    )

    def to_dict(self, include_payload: bool = True) -> dict:
        data = {
            "id": str(self.id),
            "source": self.source,
            "channel": self.channel,
            "event_type": self.event_type,
            "status": self.status,
            "extracted_email": self.extracted_email,
            "transaction_id": self.transaction_id,
            "signature_valid": self.signature_valid,
            "error_message": self.error_message,
            "source_ip": self.source_ip,
            "correlation_id": self.correlation_id,
            "relay_log_id": str(self.relay_log_id) if self.relay_log_id else None,
            "forward_status_code": self.forward_status_code,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
        if include_payload:
            data["raw_payload"] = self.raw_payload
        return data
