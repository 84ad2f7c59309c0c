"""
Tests for src/api/health.py - liveness and readiness tiers.
"""
from datetime import datetime
from unittest.mock import AsyncMock, patch

from src.api.health import health_check, readiness_check


class TestHealthCheck:
    async def test_returns_healthy(self):
        result = await health_check()
        assert result["status"] == "healthy"
        assert result["version"] == "1.0.0"
        assert datetime.fromisoformat(result["timestamp"]).tzinfo is not None


class TestReadinessCheck:
    async def test_all_reachable_is_ready(self, mock_redis):
        result = await readiness_check(db=AsyncMock())
        assert result["status"] == "ready"
        assert result["checks"] == {"database": True, "redis": True}
        mock_redis.ping.assert_awaited_once()

    async def test_database_down_is_unavailable(self):
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=Exception("connection refused"))
        result = await readiness_check(db=mock_db)
        assert result["status"] == "unavailable"
        assert result["checks"]["database"] is False

    async def test_redis_down_is_degraded(self):
        with patch("src.utils.dedup.get_redis", side_effect=Exception("redis down")):
            result = await readiness_check(db=AsyncMock())
        assert result["status"] == "degraded"
        assert result["checks"] == {"database": True, "redis": False}

    async def test_both_down_reports_database_first(self):
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=Exception("connection refused"))
        with patch("src.utils.dedup.get_redis", side_effect=Exception("redis down")):
            result = await readiness_check(db=mock_db)
        assert result["status"] == "unavailable"

    async def test_real_database(self, db):
        result = await readiness_check(db=db)
        assert result["checks"]["database"] is True
