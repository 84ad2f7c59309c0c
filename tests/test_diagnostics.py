"""
Tests for the diagnostics service and the admin-only diagnostics endpoints.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.api.auth import create_admin_token
from src.errors import DownstreamAuthFailure
from src.models.user_account import UserAccount
from src.models.webhook_log import WebhookLog
from src.services import audit, diagnostics
from tests.conftest import make_doppus_flat, make_hotmart_v2


async def _log(db, source="hotmart", payload=None, status="received", **fields) -> WebhookLog:
    log = await audit.record_received(
        db,
        source=source,
        raw_payload=payload if payload is not None else make_hotmart_v2(),
        payload_hash=uuid.uuid4().hex * 2,
        signature_valid=True,
        **fields,
    )
    await db.commit()
    if status != "received":
        await audit.finish(db, log.id, status, error_message="boom" if status == "error" else None)
    return log


class TestSearchLogs:
    async def test_direct_field_match(self, db):
        log = await _log(db, extracted_email="maria@example.com")
        result = await diagnostics.search_logs(db, "Maria@Example.com")

        assert result["total"] == 1
        match = result["matches"][0]
        assert match["match_type"] == "direct_field"
        assert match["match_path"] == "extracted_email"
        assert match["log"]["id"] == str(log.id)

    async def test_text_match_when_extraction_failed(self, db):
        """The payload mentions the email but extracted_email is empty."""
        payload = {"event": "X", "data": {"checkout": {"contact": "maria@example.com"}}}
        log = await _log(db, payload=payload, status="error")
        assert log.extracted_email is None

        result = await diagnostics.search_logs(db, "maria@example.com")
        assert result["total"] == 1
        match = result["matches"][0]
        assert match["match_type"] == "text_match"
        assert match["match_path"] == "data.checkout.contact"
        assert match["log"]["status"] == "error"

    async def test_direct_hits_first_without_duplicates(self, db):
        text_only = await _log(db, payload={"note": "maria@example.com"})
        direct = await _log(db, payload=make_hotmart_v2(email="maria@example.com"), extracted_email="maria@example.com")

        result = await diagnostics.search_logs(db, "maria@example.com")
        ids = [m["log"]["id"] for m in result["matches"]]
        assert ids == [str(direct.id), str(text_only.id)]

    async def test_no_match(self, db):
        await _log(db)
        assert (await diagnostics.search_logs(db, "ghost@example.com"))["total"] == 0

    async def test_like_wildcards_escaped(self, db):
        await _log(db, payload={"note": "abc"})
        assert (await diagnostics.search_logs(db, "%"))["total"] == 0


class TestListLogs:
    async def test_filters_and_pagination(self, db):
        for _ in range(3):
            await _log(db, source="hotmart", status="success")
        await _log(db, source="doppus", payload=make_doppus_flat(), status="error")

        page = await diagnostics.list_logs(db, source="hotmart", limit=2)
        assert page["total"] == 3
        assert page["pages"] == 2
        assert len(page["logs"]) == 2
        assert "raw_payload" not in page["logs"][0]

        errors = await diagnostics.list_logs(db, status="error")
        assert errors["total"] == 1
        assert errors["logs"][0]["source"] == "doppus"


class TestGetStatus:
    async def test_counts_and_stuck(self, db):
        await _log(db, status="success")
        stuck = await _log(db)
        stuck.updated_at = datetime.now(timezone.utc) - timedelta(hours=1)
        await db.commit()

        status = await diagnostics.get_status(db)
        assert status["status_counts"] == {"success": 1, "received": 1}
        assert status["stuck_count"] == 1
        assert len(status["recent"]) == 2
        assert status["providers"]["hotmart"]["webhook_secret_configured"] is True
        assert status["reject_invalid_signatures"] is False


# ---------------------------------------------------------------------------
# HTTP layer
# ---------------------------------------------------------------------------


@pytest.fixture
async def admin_headers(db):
    admin = UserAccount(email="ops@example.com", access_level="admin")
    db.add(admin)
    await db.commit()
    return {"Authorization": f"Bearer {create_admin_token(admin.id)}"}


@pytest.fixture
async def client(session_factory):
    from src.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestDiagnosticsAuth:
    async def test_missing_token(self, client):
        response = await client.get("/diagnostics/status")
        assert response.status_code in (401, 403)

    async def test_invalid_token(self, client):
        response = await client.get("/diagnostics/status", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    async def test_non_admin_forbidden(self, client, db):
        user = UserAccount(email="member@example.com", access_level="premium")
        db.add(user)
        await db.commit()
        response = await client.get(
            "/diagnostics/status",
            headers={"Authorization": f"Bearer {create_admin_token(user.id)}"},
        )
        assert response.status_code == 403


class TestDiagnosticsEndpoints:
    async def test_search(self, client, db, admin_headers):
        await _log(db, extracted_email="maria@example.com")
        response = await client.get("/diagnostics/search", params={"email": "maria@example.com"}, headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["matches"][0]["match_type"] == "direct_field"

    async def test_search_term_too_short(self, client, admin_headers):
        response = await client.get("/diagnostics/search", params={"email": "ab"}, headers=admin_headers)
        assert response.status_code == 422

    async def test_get_log(self, client, db, admin_headers):
        log = await _log(db)
        response = await client.get(f"/diagnostics/logs/{log.id}", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["raw_payload"]["event"] == "PURCHASE_APPROVED"

    async def test_get_log_bad_id(self, client, admin_headers):
        assert (await client.get("/diagnostics/logs/xyz", headers=admin_headers)).status_code == 400
        assert (await client.get(f"/diagnostics/logs/{uuid.uuid4()}", headers=admin_headers)).status_code == 404

    async def test_list_logs(self, client, db, admin_headers):
        await _log(db)
        response = await client.get("/diagnostics/logs", params={"source": "hotmart"}, headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["total"] == 1

    async def test_replay_error_record(self, client, db, admin_headers):
        log = await _log(db, payload=make_hotmart_v2(email="late@example.com", transaction="T-API"), status="error")
        response = await client.post(f"/diagnostics/logs/{log.id}/replay", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"log_id": str(log.id), "status": "success", "error_message": None}

    async def test_replay_refused_for_success(self, client, db, admin_headers):
        log = await _log(db, status="success")
        response = await client.post(f"/diagnostics/logs/{log.id}/replay", headers=admin_headers)
        assert response.status_code == 409

    async def test_provider_lookup_failure_is_502(self, client, admin_headers):
        failing = AsyncMock()
        failing.lookup = AsyncMock(side_effect=DownstreamAuthFailure("hotmart", "Token request refused (HTTP 401)", 401))
        with patch("src.services.provider_api.get_api_client", new_callable=AsyncMock, return_value=failing):
            response = await client.get(
                "/diagnostics/providers/hotmart/subscriptions",
                params={"email": "buyer@example.com"},
                headers=admin_headers,
            )
        assert response.status_code == 502
        assert "Token request refused" in response.json()["detail"]

    async def test_provider_lookup_unknown_provider(self, client, admin_headers):
        response = await client.get(
            "/diagnostics/providers/stripe/subscriptions",
            params={"email": "buyer@example.com"},
            headers=admin_headers,
        )
        assert response.status_code == 404
