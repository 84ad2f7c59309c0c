"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks Redis and outbound HTTP.
"""
import os

os.environ.setdefault("APP_SECRET_KEY", "test-app-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("HOTMART_WEBHOOK_SECRET", "hotmart-test-secret")
os.environ.setdefault("DOPPUS_WEBHOOK_SECRET", "doppus-test-secret")

import hashlib
import hmac
import json
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool

import src.models  # noqa: F401  registers all tables on Base.metadata
from src.database import Base

HOTMART_SECRET = os.environ["HOTMART_WEBHOOK_SECRET"]
DOPPUS_SECRET = os.environ["DOPPUS_WEBHOOK_SECRET"]


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def session_factory(monkeypatch):
    """
    In-memory SQLite shared by every session (StaticPool = one connection),
    installed as the application's session factory so background pipeline
    code sees the same data as the test.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr("src.database._async_session_factory", factory)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    """Session on the in-memory test database."""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("src.utils.dedup.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.eval = AsyncMock(return_value=1)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture(autouse=True)
def _reset_module_state():
    """Process-wide caches must not leak between tests."""
    import src.services.credentials as credentials
    import src.services.provider_api as provider_api
    import src.utils.alerting as alerting

    credentials._store = None
    provider_api._clients.clear()
    alerting._local_cooldowns.clear()
    yield
    credentials._store = None
    provider_api._clients.clear()


@pytest.fixture
def settings_override():
    """Patch get_settings with a modified copy: settings_override(reject_invalid_signatures=True)."""
    from src.config import get_settings

    patchers = []

    def _override(**values):
        patched = get_settings().model_copy(update=values)
        patcher = patch("src.config.get_settings", return_value=patched)
        patcher.start()
        patchers.append(patcher)
        return patched

    yield _override
    for patcher in patchers:
        patcher.stop()


def sign_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; compare everything in UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_body(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


# --- Sample payloads -------------------------------------------------------

def make_hotmart_v2(
    email: str = "buyer@example.com",
    transaction: str = "HP2363007968",
    event: str = "PURCHASE_APPROVED",
    plan_name: str = "premium_30",
) -> dict:
    return {
        "id": str(uuid.uuid4()),
        "creation_date": 1747447467789,
        "event": event,
        "version": "2.0.0",
        "data": {
            "product": {"id": 5381714, "name": "App DesignAuto"},
            "buyer": {"email": email, "name": "Teste Fernando"},
            "purchase": {
                "approved_date": 1747447464000,
                "order_date": 1747447427000,
                "status": "APPROVED",
                "transaction": transaction,
                "price": {"value": 7, "currency_value": "BRL"},
                "payment": {"type": "PIX", "installments_number": 1},
                "offer": {"code": "aukjngrt"},
            },
            "subscription": {
                "status": "ACTIVE",
                "plan": {"id": 1038897, "name": plan_name},
                "subscriber": {"code": "IY8BW62L"},
            },
        },
    }


def make_doppus_flat(
    email: str = "teste.maio2025@exemplo.com",
    transaction: str = "TX987654321",
    status: str = "approved",
    periodicity: str = "yearly",
    expiration_date: str | None = None,
) -> dict:
    recurrence = {"code": "REC987654", "periodicy": periodicity}
    if expiration_date:
        recurrence["expiration_date"] = expiration_date
    return {
        "customer": {"name": "Cliente Teste", "email": email, "doc_type": "cpf"},
        "status": {"code": status, "date": "2025-05-17T16:30:00.000Z"},
        "transaction": {"code": transaction, "total": 297.0, "payment_type": "credit_card"},
        "items": [{"code": "designauto-product", "name": "Design Auto Premium", "value": 297.0}],
        "recurrence": recurrence,
    }


def make_doppus_event(
    email: str = "cliente@exemplo.com",
    transaction: str = "TXD-1001",
    event: str = "PAYMENT_APPROVED",
    offer_name: str = "Plano Mensal",
) -> dict:
    return {
        "event": event,
        "data": {
            "customer": {"name": "Cliente Doppus", "email": email},
            "transaction": {"code": transaction, "total": 29.9, "payment_type": "pix"},
            "items": [{"code": "premium", "offer": "mensal-01", "offer_name": offer_name, "value": 29.9}],
            "recurrence": {"code": "REC1001", "periodicy": "monthly"},
        },
    }


@pytest.fixture
def hotmart_payload():
    return make_hotmart_v2()


@pytest.fixture
def doppus_flat_payload():
    return make_doppus_flat()
