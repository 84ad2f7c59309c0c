"""
Tests for src/utils/alerting.py - cooldowns and the webhook channel.
"""
from unittest.mock import AsyncMock, MagicMock, patch

from src.utils.alerting import AlertType, _acquire_cooldown, _send_webhook_alert, send_alert


class TestCooldown:
    async def test_redis_set_nx_key(self, mock_redis):
        assert await _acquire_cooldown(AlertType.RECONCILE_FAILED) is True
        args, kwargs = mock_redis.set.call_args
        assert args[0] == "subsync:alert_cooldown:reconcile_failed"
        assert kwargs["nx"] is True
        assert kwargs["ex"] == 300

    async def test_backlog_has_longer_cooldown(self, mock_redis):
        await _acquire_cooldown(AlertType.OUTBOX_BACKLOG)
        assert mock_redis.set.call_args.kwargs["ex"] == 1800

    async def test_suppressed_while_cooling_down(self, mock_redis):
        mock_redis.set = AsyncMock(return_value=None)
        with patch("src.utils.alerting._send_webhook_alert", new_callable=AsyncMock) as webhook:
            await send_alert(AlertType.STORAGE_UNAVAILABLE, "db down")
        webhook.assert_not_awaited()

    async def test_in_memory_fallback(self):
        with patch("src.utils.dedup.get_redis", side_effect=Exception("redis down")):
            assert await _acquire_cooldown(AlertType.RELAY_FORWARD_FAILED) is True
            assert await _acquire_cooldown(AlertType.RELAY_FORWARD_FAILED) is False


class TestSendWebhookAlert:
    async def test_webhook_includes_correlation_id_and_extra(self):
        """Webhook content includes correlation_id and extra key-value pairs."""
        mock_settings = MagicMock()
        mock_settings.alert_webhook_url = "https://hooks.example.com/test"

        mock_client = AsyncMock()
        mock_client.post = AsyncMock()
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)

        with (
            patch("src.config.get_settings", return_value=mock_settings),
            patch("httpx.AsyncClient", return_value=mock_client),
        ):
            await _send_webhook_alert(
                alert_type="reconcile_failed",
                message="hotmart transaction HP1 failed to apply",
                correlation_id="corr-abc-123",
                extra={"provider": "hotmart"},
                severity="critical",
            )

        content = mock_client.post.call_args.kwargs["json"]["content"]
        assert content.startswith("[CRITICAL] **reconcile_failed**")
        assert "corr-abc-123" in content
        assert "provider: hotmart" in content

    async def test_no_url_configured(self):
        mock_settings = MagicMock()
        mock_settings.alert_webhook_url = ""
        with (
            patch("src.config.get_settings", return_value=mock_settings),
            patch("httpx.AsyncClient") as mock_cls,
        ):
            await _send_webhook_alert("x", "y", None, None, "error")
        mock_cls.assert_not_called()

    async def test_send_failure_swallowed(self):
        mock_settings = MagicMock()
        mock_settings.alert_webhook_url = "https://hooks.example.com/test"
        with (
            patch("src.config.get_settings", return_value=mock_settings),
            patch("httpx.AsyncClient", side_effect=Exception("network down")),
        ):
            await _send_webhook_alert("x", "y", None, None, "error")
