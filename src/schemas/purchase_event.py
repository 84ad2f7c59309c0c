"""
Canonical purchase event - the provider-independent form of a billing
notification. Every payload adapter produces a ParseResult: exactly one of
Valid, FieldMissing or Malformed.
"""
from datetime import datetime
from typing import Literal, Optional, Union
from pydantic import BaseModel, Field


class PurchaseEvent(BaseModel):
    """Normalized billing event, independent of the provider's JSON shape."""
    event_type: str = Field(..., description="Provider event name, e.g. PURCHASE_APPROVED")
    kind: Literal["grant", "revoke", "ignore"] = "ignore"
    occurred_at: datetime
    provider: str
    transaction_id: str
    subscriber_email: str
    buyer_name: Optional[str] = None
    plan_identifier: Optional[str] = None
    plan_type: str = "premium"
    plan_duration_days: Optional[int] = 30
    is_lifetime: bool = False
    expires_at: Optional[datetime] = Field(
        default=None, description="Explicit expiration sent by the provider, if any",
    )
    amount: Optional[float] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    subscription_code: Optional[str] = None
    plan_id: Optional[str] = None
    product_id: Optional[str] = None
    revoke_status: Optional[str] = Field(
        default=None, description="cancelled, refunded, chargeback or expired for revoke events",
    )
    raw_payload: dict = Field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        """Ledger key: the transaction id, suffixed for revocations of that transaction."""
        if self.kind == "revoke":
            return f"{self.transaction_id}:{self.revoke_status or 'cancelled'}"
        return self.transaction_id


class Valid(BaseModel):
    result: Literal["valid"] = "valid"
    event: PurchaseEvent


class FieldMissing(BaseModel):
    result: Literal["field_missing"] = "field_missing"
    field: str
    detail: str = ""
    # Whatever was located before giving up, for the audit record
    partial_email: Optional[str] = None
    partial_transaction_id: Optional[str] = None


class Malformed(BaseModel):
    result: Literal["malformed"] = "malformed"
    detail: str


ParseResult = Union[Valid, FieldMissing, Malformed]
