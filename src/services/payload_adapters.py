"""
Payload adapters - turn a provider's webhook body into a PurchaseEvent.

One adapter per provider and payload shape:
- HotmartV2Adapter: {event, data: {buyer, purchase, subscription, product}}
- HotmartLegacyAdapter: flat postbacks ({email, transaction, status, hottok, ...})
- DoppusEventAdapter: {event, data: {customer, transaction, items, recurrence}}
- DoppusFlatAdapter: {customer, status: {code}, transaction: {code}, items, recurrence}

Each adapter tries its known field paths first. When the subscriber email or
transaction id is still missing, the whole document is searched by key alias
(src.utils.payload_search). A missing field is a result value, never an
exception.
"""
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

from dateutil import parser as date_parser

from src.schemas.purchase_event import (
    FieldMissing,
    Malformed,
    ParseResult,
    PurchaseEvent,
    Valid,
)
from src.services.plans import PlanResolution, resolve_plan
from src.utils.logging import mask_email
from src.utils.payload_search import (
    find_by_key_alias,
    find_email,
    find_transaction_id,
    first_present,
    get_path,
)

logger = logging.getLogger(__name__)

# Stored in webhook_logs.raw_payload when the body could not be decoded
UNPARSED_BODY_KEY = "_unparsed_body"

GRANT_EVENTS = {
    "PURCHASE_APPROVED",
    "PURCHASE_COMPLETE",
    "SUBSCRIPTION_REACTIVATED",
    "APPROVED",
    "COMPLETED",
    "PAYMENT_APPROVED",
}

# event -> revoke status recorded on the ledger row
REVOKE_EVENTS = {
    "PURCHASE_REFUNDED": "refunded",
    "PURCHASE_CHARGEBACK": "chargeback",
    "PURCHASE_CANCELED": "cancelled",
    "PURCHASE_EXPIRED": "expired",
    "SUBSCRIPTION_CANCELLATION": "cancelled",
    "REFUNDED": "refunded",
    "CHARGEBACK": "chargeback",
    "CANCELED": "cancelled",
    "CANCELLED": "cancelled",
    "EXPIRED": "expired",
    "PAYMENT_REFUNDED": "refunded",
    "SUBSCRIPTION_CANCELLED": "cancelled",
    "SUBSCRIPTION_EXPIRED": "expired",
}

# Hotmart v1 postbacks carry a status instead of an event name
LEGACY_HOTMART_STATUS_EVENTS = {
    "approved": "PURCHASE_APPROVED",
    "completed": "PURCHASE_COMPLETE",
    "refunded": "PURCHASE_REFUNDED",
    "chargeback": "PURCHASE_CHARGEBACK",
    "canceled": "PURCHASE_CANCELED",
    "cancelled": "PURCHASE_CANCELED",
    "expired": "PURCHASE_EXPIRED",
}

DURATION_ALIASES = ("durationdays", "duration_days")


def classify_event(event_type: Optional[str]) -> tuple[str, Optional[str]]:
    """Return (kind, revoke_status) for a provider event name."""
    normalized = (event_type or "").strip().upper()
    if normalized in GRANT_EVENTS:
        return "grant", None
    if normalized in REVOKE_EVENTS:
        return "revoke", REVOKE_EVENTS[normalized]
    return "ignore", None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse provider timestamps: epoch seconds or milliseconds (Hotmart),
    ISO 8601 strings (Doppus). Naive values are taken as UTC.
    """
    if value is None or isinstance(value, bool) or value == "":
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 100_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = date_parser.isoparse(value.strip())
        except (ValueError, OverflowError):
            try:
                parsed = date_parser.parse(value.strip())
            except (ValueError, OverflowError):
                return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value).strip() or None


class PayloadAdapter(ABC):
    """Base class for provider payload adapters."""

    provider: str = ""
    name: str = ""

    email_paths: tuple[str, ...] = ()
    transaction_paths: tuple[str, ...] = ()

    @classmethod
    @abstractmethod
    def matches(cls, payload: dict) -> bool:
        """True when the payload has this adapter's shape."""
        ...

    @abstractmethod
    def event_type(self, payload: dict) -> str:
        ...

    @abstractmethod
    def extract(self, payload: dict) -> dict:
        """
        Remaining PurchaseEvent fields from known paths.
        Returns keys: occurred_at, buyer_name, plan_identifier, periodicity,
        expires_at, amount, currency, payment_method, subscription_code, plan_id,
        product_id.
        """
        ...

    def body_token(self, payload: dict) -> Optional[str]:
        """Shared token carried inside the body, if this shape has one."""
        return None

    def locate_email(self, payload: dict) -> Optional[str]:
        value = first_present(payload, self.email_paths)
        if isinstance(value, str) and "@" in value:
            return value.strip().lower()
        hit = find_email(payload)
        if hit:
            logger.info(
                "Email located by tree search at %s (%s adapter)",
                hit[0], self.name,
                extra={"provider": self.provider},
            )
            return hit[1].lower()
        return None

    def locate_transaction_id(self, payload: dict) -> Optional[str]:
        value = first_present(payload, self.transaction_paths)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and _to_str(value):
            return _to_str(value)
        hit = find_transaction_id(payload)
        if hit:
            logger.info(
                "Transaction id located by tree search at %s (%s adapter)",
                hit[0], self.name,
                extra={"provider": self.provider},
            )
            return hit[1]
        return None

    def identify(self, payload: dict) -> tuple[str, Optional[str], Optional[str]]:
        """(event_type, email, transaction_id) without resolving the plan."""
        event_type = _to_str(self.event_type(payload)) or "unknown"
        return event_type, self.locate_email(payload), self.locate_transaction_id(payload)

    def parse(self, payload: dict, mappings: Optional[Mapping[str, PlanResolution]] = None) -> ParseResult:
        """
        Build the PurchaseEvent. `mappings` holds this provider's product
        mappings keyed by product/offer id; they win over plan name matching.
        """
        event_type, email, transaction_id = self.identify(payload)
        kind, revoke_status = classify_event(event_type)

        # Unhandled events are recorded as skipped; they need no identifiers
        if kind != "ignore":
            if not email:
                return FieldMissing(
                    field="subscriber_email",
                    detail=f"No subscriber email found in {self.name} payload",
                    partial_transaction_id=transaction_id,
                )
            if not transaction_id:
                return FieldMissing(
                    field="transaction_id",
                    detail=f"No transaction id found in {self.name} payload",
                    partial_email=email,
                )

        fields = self.extract(payload)
        duration_hit = find_by_key_alias(
            payload, DURATION_ALIASES, lambda v: v is not None and not isinstance(v, (dict, list)),
        )
        plan = resolve_plan(
            identifier=fields.get("plan_identifier"),
            periodicity=fields.get("periodicity"),
            duration_days=duration_hit[1] if duration_hit else None,
            context=self.provider,
            product_keys=(fields.get("plan_id"), fields.get("product_id")),
            mappings=mappings,
        ) if kind == "grant" else None

        event = PurchaseEvent(
            event_type=event_type,
            kind=kind,
            occurred_at=fields.get("occurred_at") or datetime.now(timezone.utc),
            provider=self.provider,
            transaction_id=transaction_id or "",
            subscriber_email=email or "",
            buyer_name=fields.get("buyer_name"),
            plan_identifier=fields.get("plan_identifier"),
            plan_type=plan.plan_type if plan else "premium",
            plan_duration_days=plan.duration_days if plan else None,
            is_lifetime=plan.is_lifetime if plan else False,
            expires_at=fields.get("expires_at"),
            amount=fields.get("amount"),
            currency=fields.get("currency"),
            payment_method=fields.get("payment_method"),
            subscription_code=fields.get("subscription_code"),
            plan_id=fields.get("plan_id"),
            product_id=fields.get("product_id"),
            revoke_status=revoke_status,
            raw_payload=payload,
        )
        logger.debug(
            "Normalized %s %s for %s (%s)",
            self.name, event_type, mask_email(email), kind,
            extra={"provider": self.provider, "transaction_id": transaction_id},
        )
        return Valid(event=event)


class HotmartV2Adapter(PayloadAdapter):
    provider = "hotmart"
    name = "hotmart_v2"

    email_paths = ("data.buyer.email", "data.subscriber.email", "data.user.email")
    transaction_paths = ("data.purchase.transaction", "data.transaction")

    @classmethod
    def matches(cls, payload: dict) -> bool:
        return isinstance(payload.get("data"), dict) and "event" in payload

    def event_type(self, payload: dict) -> str:
        return payload.get("event")

    def body_token(self, payload: dict) -> Optional[str]:
        return _to_str(payload.get("hottok"))

    def extract(self, payload: dict) -> dict:
        return {
            "occurred_at": parse_timestamp(first_present(payload, (
                "data.purchase.approved_date", "data.purchase.order_date", "creation_date",
            ))),
            "buyer_name": _to_str(first_present(payload, ("data.buyer.name", "data.subscriber.name"))),
            "plan_identifier": _to_str(first_present(payload, (
                "data.subscription.plan.name", "data.purchase.offer.code", "data.product.name",
            ))),
            "periodicity": None,
            "expires_at": parse_timestamp(get_path(payload, "data.purchase.date_next_charge")),
            "amount": _to_float(first_present(payload, ("data.purchase.price.value", "data.purchase.full_price.value"))),
            "currency": _to_str(get_path(payload, "data.purchase.price.currency_value")),
            "payment_method": _to_str(get_path(payload, "data.purchase.payment.type")),
            "subscription_code": _to_str(get_path(payload, "data.subscription.subscriber.code")),
            "plan_id": _to_str(get_path(payload, "data.subscription.plan.id")),
            "product_id": _to_str(get_path(payload, "data.product.id")),
        }


class HotmartLegacyAdapter(PayloadAdapter):
    provider = "hotmart"
    name = "hotmart_legacy"

    email_paths = ("email", "buyer.email", "buyer_email")
    transaction_paths = ("transaction", "transaction_id", "purchase.transaction")

    @classmethod
    def matches(cls, payload: dict) -> bool:
        return not HotmartV2Adapter.matches(payload)

    def event_type(self, payload: dict) -> str:
        event = _to_str(payload.get("event"))
        if event:
            return event
        status = (_to_str(payload.get("status")) or "").lower()
        return LEGACY_HOTMART_STATUS_EVENTS.get(status, status.upper() or "unknown")

    def body_token(self, payload: dict) -> Optional[str]:
        return _to_str(payload.get("hottok"))

    def extract(self, payload: dict) -> dict:
        return {
            "occurred_at": parse_timestamp(first_present(payload, (
                "purchase_date", "order_date", "approved_date", "creation_date",
            ))),
            "buyer_name": _to_str(first_present(payload, ("name", "buyer.name", "first_name"))),
            "plan_identifier": _to_str(first_present(payload, (
                "plan", "plan_name", "subscription.plan.name", "prod_name",
            ))),
            "periodicity": None,
            "expires_at": parse_timestamp(first_present(payload, ("date_next_charge", "subscription_expiration"))),
            "amount": _to_float(first_present(payload, ("price", "full_price"))),
            "currency": _to_str(first_present(payload, ("currency", "currency_code_from"))),
            "payment_method": _to_str(first_present(payload, ("payment_type", "payment.type"))),
            "subscription_code": _to_str(first_present(payload, ("subscriber_code", "subscription.subscriber.code"))),
            "plan_id": _to_str(first_present(payload, ("plan_id", "off"))),
            "product_id": _to_str(first_present(payload, ("prod", "product_id", "product.id"))),
        }


class DoppusEventAdapter(PayloadAdapter):
    provider = "doppus"
    name = "doppus_event"

    email_paths = ("data.customer.email", "data.buyer.email")
    transaction_paths = ("data.transaction.code", "data.transaction.id", "data.transaction_code")

    @classmethod
    def matches(cls, payload: dict) -> bool:
        return isinstance(payload.get("data"), dict) and "event" in payload

    def event_type(self, payload: dict) -> str:
        return payload.get("event")

    def extract(self, payload: dict) -> dict:
        return _doppus_fields(payload, prefix="data.")


class DoppusFlatAdapter(PayloadAdapter):
    provider = "doppus"
    name = "doppus_flat"

    email_paths = ("customer.email", "buyer.email")
    transaction_paths = ("transaction.code", "transaction.id", "transaction_code")

    @classmethod
    def matches(cls, payload: dict) -> bool:
        return not DoppusEventAdapter.matches(payload)

    def event_type(self, payload: dict) -> str:
        status = get_path(payload, "status.code")
        if status is None and isinstance(payload.get("status"), str):
            status = payload["status"]
        return status or payload.get("event")

    def extract(self, payload: dict) -> dict:
        return _doppus_fields(payload, prefix="")


def _doppus_fields(payload: dict, prefix: str) -> dict:
    def p(*paths: str) -> tuple[str, ...]:
        return tuple(prefix + path for path in paths)

    return {
        "occurred_at": parse_timestamp(first_present(payload, p("status.date", "transaction.date", "date"))),
        "buyer_name": _to_str(first_present(payload, p("customer.name"))),
        "plan_identifier": _to_str(first_present(payload, p(
            "items.0.offer_name", "items.0.offer", "product.code", "items.0.name",
        ))),
        "periodicity": _to_str(first_present(payload, p("recurrence.periodicy", "recurrence.periodicity"))),
        "expires_at": parse_timestamp(first_present(payload, p("recurrence.expiration_date"))),
        "amount": _to_float(first_present(payload, p("transaction.total", "items.0.value"))),
        "currency": _to_str(first_present(payload, p("transaction.currency"))) or "BRL",
        "payment_method": _to_str(first_present(payload, p("transaction.payment_type"))),
        "subscription_code": _to_str(first_present(payload, p("recurrence.code"))),
        "plan_id": _to_str(first_present(payload, p("items.0.offer", "items.0.code"))),
        "product_id": _to_str(first_present(payload, p("items.0.code", "product.code", "product.id"))),
    }


ADAPTERS: dict[str, list[type[PayloadAdapter]]] = {
    "hotmart": [HotmartV2Adapter, HotmartLegacyAdapter],
    "doppus": [DoppusEventAdapter, DoppusFlatAdapter],
}


def detect_adapter(provider: str, payload: dict) -> Optional[PayloadAdapter]:
    """Pick the adapter for this provider's payload shape. None for unknown providers."""
    for adapter_cls in ADAPTERS.get(provider, []):
        if adapter_cls.matches(payload):
            return adapter_cls()
    return None


def decode_body(body: bytes, content_type: Optional[str] = None) -> tuple[dict, Optional[str]]:
    """
    Decode a raw request body into the dict stored on the webhook log.

    Returns (payload, error). Bodies that are not a JSON object are kept
    under UNPARSED_BODY_KEY and error describes the problem.
    """
    text = body.decode("utf-8", errors="replace")
    if content_type and "application/x-www-form-urlencoded" in content_type.lower():
        return dict(parse_qsl(text, keep_blank_values=True)), None
    try:
        data = json.loads(text) if text.strip() else None
    except json.JSONDecodeError as e:
        return {UNPARSED_BODY_KEY: text}, f"Body is not valid JSON: {e.msg}"
    if not isinstance(data, dict):
        return {UNPARSED_BODY_KEY: data}, f"Expected a JSON object, got {type(data).__name__}"
    return data, None


def _adapter_for(provider: str, payload: Any) -> tuple[Optional[PayloadAdapter], Optional[Malformed]]:
    if not isinstance(payload, dict):
        return None, Malformed(detail=f"Expected a JSON object, got {type(payload).__name__}")
    if set(payload.keys()) == {UNPARSED_BODY_KEY}:
        return None, Malformed(detail="Body is not a JSON object")

    adapter = detect_adapter(provider, payload)
    if adapter is None:
        return None, Malformed(detail=f"No payload adapter for provider '{provider}'")
    return adapter, None


def normalize_payload(
    provider: str,
    payload: Any,
    mappings: Optional[Mapping[str, PlanResolution]] = None,
) -> ParseResult:
    """Normalize a stored payload into a ParseResult."""
    adapter, malformed = _adapter_for(provider, payload)
    if malformed is not None:
        return malformed
    return adapter.parse(payload, mappings=mappings)


def summarize_payload(provider: str, payload: dict) -> dict:
    """
    Best-effort event_type, email and transaction id for the audit record,
    written before the pipeline runs. Never raises. Plans are not resolved
    here; the pipeline does that once.
    """
    summary = {"event_type": "unknown", "email": None, "transaction_id": None, "body_token": None}
    try:
        adapter, _ = _adapter_for(provider, payload)
        if adapter is not None:
            event_type, email, transaction_id = adapter.identify(payload)
            summary["event_type"] = event_type
            summary["email"] = email
            summary["transaction_id"] = transaction_id
            summary["body_token"] = adapter.body_token(payload)
    except Exception as e:
        logger.warning("Payload summary failed for %s: %s", provider, str(e))
    return summary
