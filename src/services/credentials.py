"""
Provider credential store - webhook secrets and OAuth credentials.

Loaded from the provider_credentials table (secrets Fernet-encrypted) and
cached in-process for CREDENTIAL_REFRESH_SECONDS. Secrets stay in process
memory only; they are never written to Redis. When no active row exists for
a provider, the HOTMART_* / DOPPUS_* settings are used instead.
"""
import asyncio
import logging
import time
from pydantic import BaseModel, ConfigDict
from typing import Optional

from sqlalchemy import select

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("hotmart", "doppus")


class ProviderCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    client_id: str = ""
    client_secret: str = ""
    webhook_secret: str = ""
    basic_token: str = ""
    environment: str = "production"
    origin: str = "settings"  # settings, database

    @property
    def has_api_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)


class CredentialStore:
    """TTL cache over the provider_credentials table."""

    def __init__(self, ttl_seconds: Optional[int] = None):
        if ttl_seconds is None:
            from src.config import get_settings
            ttl_seconds = get_settings().credential_refresh_seconds
        self.ttl_seconds = ttl_seconds
        self._cache: dict[str, ProviderCredentials] = {}
        self._loaded_at: float = 0.0
        self._lock = asyncio.Lock()

    def _is_stale(self) -> bool:
        return not self._loaded_at or (time.monotonic() - self._loaded_at) >= self.ttl_seconds

    def invalidate(self) -> None:
        self._loaded_at = 0.0

    async def get(self, provider: str) -> ProviderCredentials:
        """Credentials for one provider, refreshing the cache when the TTL has passed."""
        if self._is_stale():
            async with self._lock:
                if self._is_stale():
                    await self.refresh()
        creds = self._cache.get(provider)
        if creds is None:
            creds = _from_settings(provider)
        return creds

    async def refresh(self) -> None:
        """
        Reload every provider. A database failure keeps the previous cache
        (or the settings fallback on first load) and retries on the next call.
        """
        loaded: dict[str, ProviderCredentials] = {}
        try:
            rows = await _load_rows()
            for row in rows:
                loaded[row.provider] = _from_row(row)
        except Exception as e:
            logger.warning("Failed to load provider credentials from database: %s", str(e))
            if self._cache:
                self._loaded_at = time.monotonic()
                return

        for provider in SUPPORTED_PROVIDERS:
            if provider not in loaded:
                loaded[provider] = _from_settings(provider)

        self._cache = loaded
        self._loaded_at = time.monotonic()
        logger.debug(
            "Provider credentials refreshed: %s",
            {p: c.origin for p, c in loaded.items()},
        )


async def _load_rows():
    from src.database import async_session_factory
    from src.models.provider_credential import ProviderCredential

    async with async_session_factory() as db:
        result = await db.execute(
            select(ProviderCredential).where(ProviderCredential.is_active == True)  # noqa: E712
        )
        return list(result.scalars().all())


def _from_row(row) -> ProviderCredentials:
    from src.utils.encryption import decrypt_value

    return ProviderCredentials(
        provider=row.provider,
        client_id=row.client_id or "",
        client_secret=decrypt_value(row.client_secret_encrypted) or "",
        webhook_secret=decrypt_value(row.webhook_secret_encrypted) or "",
        basic_token=decrypt_value(row.basic_token_encrypted) or "",
        environment=row.environment or "production",
        origin="database",
    )


def _from_settings(provider: str) -> ProviderCredentials:
    from src.config import get_settings
    settings = get_settings()

    if provider == "hotmart":
        return ProviderCredentials(
            provider="hotmart",
            client_id=settings.hotmart_client_id,
            client_secret=settings.hotmart_client_secret,
            webhook_secret=settings.hotmart_webhook_secret,
            basic_token=settings.hotmart_basic_token,
            environment=settings.hotmart_environment,
        )
    if provider == "doppus":
        return ProviderCredentials(
            provider="doppus",
            client_id=settings.doppus_client_id,
            client_secret=settings.doppus_client_secret,
            webhook_secret=settings.doppus_webhook_secret,
        )
    return ProviderCredentials(provider=provider)


_store: Optional[CredentialStore] = None


def get_credential_store() -> CredentialStore:
    """Process-wide credential store."""
    global _store
    if _store is None:
        _store = CredentialStore()
    return _store


async def get_provider_credentials(provider: str) -> ProviderCredentials:
    return await get_credential_store().get(provider)
