"""
Webhook signature validation - verify incoming webhooks are authentic.

Supported providers:
- Doppus: HMAC-SHA256 hex digest of the raw body via X-Doppus-Signature
- Hotmart: HMAC-SHA256 via X-Hotmart-Signature, or the legacy shared
  token ("hottok") via X-Hotmart-Hottok

All validators return a bool and never raise. An invalid signature does not
stop processing; the result is stored on the webhook log record.
"""
import hashlib
import hmac
import logging
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = {
    "hotmart": ("X-Hotmart-Signature", "X-Hotmart-Hottok"),
    "doppus": ("X-Doppus-Signature",),
}


def validate_hmac_sha256(
    secret: str,
    signature: str,
    body: bytes,
    header_prefix: str = "sha256=",
) -> bool:
    """
    Validate generic HMAC-SHA256 webhook signature.
    Handles signatures with optional prefix (e.g., "sha256=...").
    Returns True if valid, False if invalid.
    """
    if not secret or not signature:
        return False

    # Strip prefix if present
    sig = signature.strip()
    if header_prefix and sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    try:
        expected = hmac.new(
            secret.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, sig.lower())
    except Exception as e:
        logger.error("HMAC-SHA256 validation error: %s", str(e))
        return False


def validate_shared_token(secret: str, token: str) -> bool:
    """Constant-time comparison of a static shared token (Hotmart hottok)."""
    if not secret or not token:
        return False
    try:
        return hmac.compare_digest(secret.encode("utf-8"), token.strip().encode("utf-8"))
    except Exception as e:
        logger.error("Shared token validation error: %s", str(e))
        return False


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for dedup and audit."""
    return hashlib.sha256(body).hexdigest()


def _header(headers: Mapping[str, str], name: str) -> str:
    # Starlette headers are case-insensitive; plain dicts (tests, relay) may not be
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower(), "")
    return value or ""


def verify_provider_signature(
    provider: str,
    headers: Mapping[str, str],
    body: bytes,
    secret: Optional[str],
    body_token: Optional[str] = None,
) -> bool:
    """
    Validate the provider-specific signature of a webhook.

    body_token is the "hottok" field some Hotmart payload versions carry in
    the JSON body instead of a header.
    """
    if not secret:
        logger.warning(
            "No webhook secret configured for provider '%s' - signature marked invalid",
            provider,
            extra={"provider": provider},
        )
        return False

    if provider == "doppus":
        return validate_hmac_sha256(secret, _header(headers, "X-Doppus-Signature"), body, header_prefix="")

    if provider == "hotmart":
        signature = _header(headers, "X-Hotmart-Signature")
        if signature:
            return validate_hmac_sha256(secret, signature, body)
        token = _header(headers, "X-Hotmart-Hottok") or (body_token or "")
        return validate_shared_token(secret, token)

    logger.warning("Unknown provider '%s' for signature validation", provider)
    return False
