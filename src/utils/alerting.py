"""
Operator alerts for conditions nobody sees in a 200 response: failed
reconciliations, lost audit writes, relay forward failures, rejected
signatures and an outbox that keeps filling up.

Every alert is logged. When ALERT_WEBHOOK_URL is set (Discord or Slack
incoming webhook) it is also posted there. Each type has a cooldown held in
Redis, so a provider retrying the same broken event does not page anyone
more than once per window.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


class AlertType:
    RECONCILE_FAILED = "reconcile_failed"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    RELAY_FORWARD_FAILED = "relay_forward_failed"
    SIGNATURE_REJECTED = "signature_rejected"
    OUTBOX_BACKLOG = "outbox_backlog"


ALERT_COOLDOWN_SECONDS = 300

# Conditions found by polling persist between polls
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    AlertType.OUTBOX_BACKLOG: 1800,
}

SEVERITY_PREFIX = {"critical": "[CRITICAL]", "error": "[ERROR]", "warning": "[WARN]"}

# alert_type -> monotonic expiry, used only while Redis is unreachable
_local_cooldowns: dict[str, float] = {}


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> None:
    """Log and post one alert unless its type is cooling down. Never raises."""
    if not await _acquire_cooldown(alert_type):
        logger.debug("Alert %s suppressed (cooldown)", alert_type)
        return

    from src.utils.logging import get_correlation_id

    cid = correlation_id or get_correlation_id()
    level = logging.CRITICAL if severity == "critical" else logging.ERROR
    logger.log(
        level,
        "ALERT [%s]: %s%s",
        alert_type, message, f" (correlation_id={cid})" if cid else "",
        extra={"error_code": alert_type, "provider": (extra or {}).get("provider")},
    )

    await _send_webhook_alert(alert_type, message, cid, extra, severity)


async def _acquire_cooldown(alert_type: str) -> bool:
    """True when this alert may go out now. SET NX EX in Redis, dict fallback."""
    cooldown = ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)

    try:
        from src.utils.dedup import get_redis

        redis = await get_redis()
        return bool(await redis.set(f"subsync:alert_cooldown:{alert_type}", "1", nx=True, ex=cooldown))
    except Exception as e:
        logger.debug("Alert cooldown falling back to memory: %s", str(e))

    now = time.monotonic()
    if now < _local_cooldowns.get(alert_type, 0.0):
        return False
    _local_cooldowns[alert_type] = now + cooldown
    return True


def _format_content(
    alert_type: str,
    message: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
    severity: str,
) -> str:
    lines = [f"{SEVERITY_PREFIX.get(severity, '[INFO]')} **{alert_type}**", message]
    if correlation_id:
        lines.append(f"`correlation_id: {correlation_id}`")
    for key, val in (extra or {}).items():
        lines.append(f"`{key}: {val}`")
    return "\n".join(lines)


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
    severity: str,
) -> None:
    try:
        from src.config import get_settings

        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        content = _format_content(alert_type, message, correlation_id, extra, severity)
        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        logger.warning("Failed to post %s alert: %s", alert_type, str(e))
