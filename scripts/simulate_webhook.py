"""
Send a signed sample billing webhook to the main app or the relay listener.

Usage:
    python scripts/simulate_webhook.py
    python scripts/simulate_webhook.py --provider doppus --shape flat
    python scripts/simulate_webhook.py --provider hotmart --event PURCHASE_REFUNDED --transaction HP123
    python scripts/simulate_webhook.py --target relay --secret my-webhook-secret
"""
import argparse
import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TARGETS = {
    "main": "http://localhost:8000",
    "relay": "http://localhost:9000",
}


def hotmart_payload(email: str, transaction: str, event: str, plan: str) -> dict:
    now_ms = int(time.time() * 1000)
    return {
        "id": str(uuid.uuid4()),
        "creation_date": now_ms,
        "event": event,
        "version": "2.0.0",
        "data": {
            "product": {"id": 5381714, "name": "App Premium"},
            "buyer": {"email": email, "name": "Test Buyer"},
            "purchase": {
                "approved_date": now_ms,
                "order_date": now_ms,
                "status": "APPROVED",
                "transaction": transaction,
                "price": {"value": 97.0, "currency_value": "BRL"},
                "payment": {"type": "PIX", "installments_number": 1},
                "offer": {"code": "test-offer"},
            },
            "subscription": {
                "status": "ACTIVE",
                "plan": {"id": 1038897, "name": plan},
                "subscriber": {"code": "SUB" + transaction[-6:]},
            },
        },
    }


def doppus_flat_payload(email: str, transaction: str, status: str, periodicity: str) -> dict:
    return {
        "customer": {"name": "Test Customer", "email": email, "doc_type": "cpf"},
        "status": {"code": status, "date": time.strftime("%Y-%m-%dT%H:%M:%S.000Z", time.gmtime())},
        "transaction": {"code": transaction, "total": 297.0, "payment_type": "credit_card"},
        "items": [{"code": "premium", "name": "Premium", "offer": "premium-offer", "value": 297.0}],
        "recurrence": {"code": "REC" + transaction[-6:], "periodicy": periodicity},
    }


def doppus_event_payload(email: str, transaction: str, event: str, periodicity: str) -> dict:
    flat = doppus_flat_payload(email, transaction, "approved", periodicity)
    flat.pop("status")
    return {"event": event, "data": flat}


def signed_headers(provider: str, body: bytes, secret: str) -> dict:
    headers = {"Content-Type": "application/json"}
    if not secret:
        return headers
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if provider == "doppus":
        headers["X-Doppus-Signature"] = digest
    else:
        headers["X-Hotmart-Signature"] = f"sha256={digest}"
    return headers


async def send(base_url: str, provider: str, payload: dict, secret: str) -> httpx.Response:
    body = json.dumps(payload).encode("utf-8")
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{base_url}/webhook/{provider}",
            content=body,
            headers=signed_headers(provider, body, secret),
        )
    logger.info("%s webhook response: %s %s", provider, resp.status_code, resp.text)
    return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate billing webhooks")
    parser.add_argument("--provider", default="hotmart", choices=["hotmart", "doppus"])
    parser.add_argument("--shape", default="event", choices=["event", "flat"], help="Doppus payload shape")
    parser.add_argument("--target", default="main", choices=list(TARGETS))
    parser.add_argument("--email", default="buyer@example.com")
    parser.add_argument("--transaction", default=None)
    parser.add_argument("--event", default=None, help="Event name (Hotmart/Doppus event) or Doppus status code")
    parser.add_argument("--plan", default="premium_30", help="Hotmart plan name")
    parser.add_argument("--periodicity", default="monthly", help="Doppus recurrence.periodicy")
    parser.add_argument("--secret", default="", help="Webhook secret used to sign the body")
    args = parser.parse_args()

    transaction = args.transaction or f"TX{uuid.uuid4().hex[:10].upper()}"

    if args.provider == "hotmart":
        payload = hotmart_payload(args.email, transaction, args.event or "PURCHASE_APPROVED", args.plan)
    elif args.shape == "flat":
        payload = doppus_flat_payload(args.email, transaction, args.event or "approved", args.periodicity)
    else:
        payload = doppus_event_payload(args.email, transaction, args.event or "PAYMENT_APPROVED", args.periodicity)

    logger.info("Sending %s %s for %s to %s", args.provider, transaction, args.email, args.target)
    await send(TARGETS[args.target], args.provider, payload, args.secret)


if __name__ == "__main__":
    asyncio.run(main())
