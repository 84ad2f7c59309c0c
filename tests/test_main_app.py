"""
Tests for src/main.py - FastAPI app creation, middleware, lifespan.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.main import (
    CorrelationIdMiddleware,
    create_app,
    init_sentry,
    lifespan,
    warn_on_insecure_settings,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_mock_settings(**overrides):
    """Build a mock Settings object."""
    defaults = {
        "app_env": "test",
        "log_level": "WARNING",
        "dashboard_jwt_secret": "test_jwt_secret",
        "encryption_key": "test_encryption_key",
        "sentry_dsn": "",
        "hotmart_webhook_secret": "hottok",
        "doppus_webhook_secret": "",
    }
    defaults.update(overrides)
    settings = MagicMock()
    for k, v in defaults.items():
        setattr(settings, k, v)
    return settings


def _app(**overrides) -> FastAPI:
    with (
        patch("src.main.get_settings", return_value=_make_mock_settings(**overrides)),
        patch("src.main.configure_structured_logging"),
    ):
        return create_app()


# ---------------------------------------------------------------------------
# create_app - application factory
# ---------------------------------------------------------------------------


class TestCreateApp:
    def test_returns_fastapi_instance(self):
        assert isinstance(_app(), FastAPI)

    def test_app_metadata(self):
        app = _app()
        assert app.title == "SubSync"
        assert app.version == "1.0.0"

    def test_configures_structured_logging(self):
        with (
            patch("src.main.get_settings", return_value=_make_mock_settings(log_level="DEBUG")),
            patch("src.main.configure_structured_logging") as mock_log,
        ):
            create_app()
        mock_log.assert_called_once_with("DEBUG")

    def test_routes_mounted(self):
        route_paths = [route.path for route in _app().routes]
        assert "/webhook/{provider}" in route_paths
        assert "/diagnostics/search" in route_paths
        assert "/diagnostics/logs/{log_id}/replay" in route_paths
        assert "/health" in route_paths


# ---------------------------------------------------------------------------
# CorrelationIdMiddleware
# ---------------------------------------------------------------------------


class TestCorrelationIdMiddleware:
    def test_generates_correlation_id_when_missing(self):
        client = TestClient(_app(), raise_server_exceptions=False)
        response = client.get("/health")
        assert len(response.headers["x-correlation-id"]) == 32

    def test_uses_existing_correlation_id(self):
        client = TestClient(_app(), raise_server_exceptions=False)
        custom_cid = "abc123def456789012345678abcdef00"
        response = client.get("/health", headers={"X-Correlation-ID": custom_cid})
        assert response.headers["x-correlation-id"] == custom_cid

    def test_is_registered(self):
        app = _app()
        assert any(m.cls is CorrelationIdMiddleware for m in app.user_middleware)


# ---------------------------------------------------------------------------
# Startup helpers
# ---------------------------------------------------------------------------


class TestStartupHelpers:
    def test_sentry_skipped_without_dsn(self):
        with patch("sentry_sdk.init") as mock_init:
            init_sentry(_make_mock_settings(sentry_dsn=""))
        mock_init.assert_not_called()

    def test_sentry_initialized_with_dsn(self):
        with patch("sentry_sdk.init") as mock_init:
            init_sentry(_make_mock_settings(sentry_dsn="https://key@sentry.example/1"))
        assert mock_init.call_args.kwargs["environment"] == "test"

    def test_insecure_settings_warned(self, caplog):
        settings = _make_mock_settings(
            dashboard_jwt_secret="", encryption_key="", hotmart_webhook_secret="", doppus_webhook_secret="",
        )
        with caplog.at_level("WARNING", logger="subsync"):
            warn_on_insecure_settings(settings)
        assert "DASHBOARD_JWT_SECRET" in caplog.text
        assert "ENCRYPTION_KEY" in caplog.text
        assert "webhook secrets" in caplog.text


# ---------------------------------------------------------------------------
# lifespan - startup and shutdown
# ---------------------------------------------------------------------------


class TestLifespan:
    @pytest.mark.asyncio
    async def test_starts_and_stops_outbox_worker(self):
        started = asyncio.Event()

        async def fake_worker():
            started.set()
            await asyncio.sleep(3600)

        store = MagicMock()
        store.refresh = AsyncMock()

        with (
            patch("src.main.get_settings", return_value=_make_mock_settings()),
            patch("src.services.credentials.get_credential_store", return_value=store),
            patch("src.workers.outbox_recovery.run_outbox_recovery", fake_worker),
        ):
            async with lifespan(MagicMock()):
                await asyncio.wait_for(started.wait(), timeout=1)
                store.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_waits_for_in_flight_pipelines(self):
        from src.services import ingestion

        finished = []

        async def pipeline():
            await asyncio.sleep(0.05)
            finished.append(True)

        store = MagicMock()
        store.refresh = AsyncMock()

        with (
            patch("src.main.get_settings", return_value=_make_mock_settings()),
            patch("src.services.credentials.get_credential_store", return_value=store),
            patch("src.workers.outbox_recovery.run_outbox_recovery", AsyncMock()),
        ):
            async with lifespan(MagicMock()):
                task = asyncio.create_task(pipeline())
                ingestion._background_tasks.add(task)
                task.add_done_callback(ingestion._background_tasks.discard)

        assert finished == [True]
