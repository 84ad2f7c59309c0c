"""
Provider REST API clients - on-demand purchase/subscription lookups for the
diagnostics endpoints. Never used on the webhook path.

Both providers use the OAuth 2.0 client credentials flow. Tokens are cached
on the client until shortly before expiry. Every failure (token refused,
HTTP error, timeout) surfaces as DownstreamAuthFailure.
"""
import base64
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from src.errors import DownstreamAuthFailure
from src.services.credentials import ProviderCredentials, get_provider_credentials

logger = logging.getLogger(__name__)

HOTMART_AUTH_URL = "https://developers.hotmart.com/security/oauth/token"
HOTMART_API_BASE = "https://developers.hotmart.com"
HOTMART_SANDBOX_API_BASE = "https://sandbox.hotmart.com"
DOPPUS_API_BASE = "https://api.doppus.app/4.0"

# Refresh this many seconds before the provider's expiry
TOKEN_EXPIRY_MARGIN = 60


def _items(data: Any) -> list:
    """Result list from the provider's paging envelope."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("items", "data", "results"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


class ProviderAPIClient(ABC):
    """Base class for provider API clients."""

    provider: str = ""

    def __init__(
        self,
        credentials: ProviderCredentials,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if timeout is None:
            from src.config import get_settings
            timeout = get_settings().provider_api_timeout_seconds
        self.credentials = credentials
        self.timeout = timeout
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires: float = 0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @property
    @abstractmethod
    def api_base(self) -> str:
        ...

    @abstractmethod
    async def _fetch_token(self, client: httpx.AsyncClient) -> httpx.Response:
        """POST the client credentials grant."""
        ...

    async def _get_token(self) -> str:
        """Get or refresh the OAuth access token."""
        if self._token and time.time() < self._token_expires:
            return self._token

        if not self.credentials.has_api_credentials:
            raise DownstreamAuthFailure(self.provider, "API credentials not configured")

        try:
            async with self._client() as client:
                response = await self._fetch_token(client)
        except httpx.TimeoutException as e:
            raise DownstreamAuthFailure(self.provider, f"Token request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise DownstreamAuthFailure(self.provider, f"Token request failed: {e}") from e

        if response.status_code != 200:
            logger.warning(
                "%s token request refused: HTTP %d",
                self.provider, response.status_code,
                extra={"provider": self.provider},
            )
            raise DownstreamAuthFailure(
                self.provider,
                f"Token request refused (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            self._token = data["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise DownstreamAuthFailure(self.provider, "Token response has no access_token") from e

        self._token_expires = time.time() + int(data.get("expires_in", 3600)) - TOKEN_EXPIRY_MARGIN
        return self._token

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """Make an authenticated request to the provider API."""
        token = await self._get_token()
        try:
            async with self._client() as client:
                response = await client.request(
                    method,
                    f"{self.api_base}{path}",
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Content-Type": "application/json",
                    },
                    **kwargs,
                )
        except httpx.TimeoutException as e:
            raise DownstreamAuthFailure(self.provider, f"{path} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise DownstreamAuthFailure(self.provider, f"{path} failed: {e}") from e

        if response.status_code in (401, 403):
            # Token revoked early; the next call fetches a new one
            self._token = None
        if response.status_code >= 400:
            raise DownstreamAuthFailure(
                self.provider,
                f"{path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise DownstreamAuthFailure(self.provider, f"{path} returned invalid JSON") from e

    @abstractmethod
    async def lookup_subscriptions(self, email: str) -> list[dict]:
        """Subscriptions the provider holds for a subscriber email."""
        ...

    async def lookup(self, email: str) -> dict:
        """Everything the provider knows about an email, for the diagnostics view."""
        return {
            "provider": self.provider,
            "email": email,
            "subscriptions": await self.lookup_subscriptions(email),
        }


class HotmartClient(ProviderAPIClient):
    """Hotmart payments API (sales + subscriptions)."""

    provider = "hotmart"

    @property
    def api_base(self) -> str:
        if self.credentials.environment == "sandbox":
            return HOTMART_SANDBOX_API_BASE
        return HOTMART_API_BASE

    def _basic_token(self) -> str:
        if self.credentials.basic_token:
            token = self.credentials.basic_token
            return token[len("Basic "):] if token.startswith("Basic ") else token
        raw = f"{self.credentials.client_id}:{self.credentials.client_secret}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    async def _fetch_token(self, client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(
            HOTMART_AUTH_URL,
            params={
                "grant_type": "client_credentials",
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
            },
            headers={"Authorization": f"Basic {self._basic_token()}"},
        )

    async def lookup_sales(self, email: str) -> list[dict]:
        data = await self._request("GET", "/payments/api/v1/sales", params={"buyer_email": email})
        return _items(data)

    async def lookup_subscriptions(self, email: str) -> list[dict]:
        data = await self._request(
            "GET", "/payments/api/v1/subscriptions", params={"subscriber_email": email},
        )
        return _items(data)

    async def lookup(self, email: str) -> dict:
        result = await super().lookup(email)
        result["sales"] = await self.lookup_sales(email)
        return result


class DoppusClient(ProviderAPIClient):
    """Doppus API v4."""

    provider = "doppus"

    @property
    def api_base(self) -> str:
        return DOPPUS_API_BASE

    async def _fetch_token(self, client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(
            f"{DOPPUS_API_BASE}/token",
            data={"grant_type": "client_credentials"},
            auth=(self.credentials.client_id, self.credentials.client_secret),
        )

    async def lookup_subscriptions(self, email: str) -> list[dict]:
        data = await self._request("GET", "/subscriptions", params={"customer.email": email})
        return _items(data)


CLIENTS: dict[str, type[ProviderAPIClient]] = {
    "hotmart": HotmartClient,
    "doppus": DoppusClient,
}

# Clients are kept per provider so their OAuth tokens are reused
_clients: dict[str, ProviderAPIClient] = {}


async def get_api_client(provider: str) -> ProviderAPIClient:
    """API client for a provider, rebuilt when its credentials change."""
    client_cls = CLIENTS.get(provider)
    if client_cls is None:
        raise DownstreamAuthFailure(provider, "Unknown provider")

    credentials = await get_provider_credentials(provider)
    client = _clients.get(provider)
    if client is None or client.credentials != credentials:
        client = client_cls(credentials)
        _clients[provider] = client
    return client
