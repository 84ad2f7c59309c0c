"""
Tests for the provider REST API clients (OAuth client credentials + lookups).
Network calls go through httpx.MockTransport.
"""
import base64

import httpx
import pytest

from src.errors import DownstreamAuthFailure
from src.services.credentials import ProviderCredentials
from src.services.provider_api import (
    DOPPUS_API_BASE,
    HOTMART_AUTH_URL,
    HOTMART_SANDBOX_API_BASE,
    DoppusClient,
    HotmartClient,
    get_api_client,
)


def _hotmart_creds(**overrides) -> ProviderCredentials:
    values = dict(provider="hotmart", client_id="cid", client_secret="csecret")
    values.update(overrides)
    return ProviderCredentials(**values)


class _Recorder:
    """MockTransport handler that records requests and answers from a route table."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = request.url
        key = f"{request.method} {url.scheme}://{url.host}{url.path}"
        handler = self.routes.get(key)
        if handler is None:
            return httpx.Response(404, json={"error": "no route"})
        if isinstance(handler, Exception):
            raise handler
        status, body = handler
        return httpx.Response(status, json=body)


def _token_response(expires_in: int = 3600) -> tuple:
    return 200, {"access_token": "tok-1", "expires_in": expires_in}


class TestHotmartClient:
    async def test_lookup_sales_and_subscriptions(self):
        recorder = _Recorder({
            f"POST {HOTMART_AUTH_URL}": _token_response(),
            "GET https://developers.hotmart.com/payments/api/v1/subscriptions": (200, {"items": [{"subscriber_code": "IY8BW62L", "status": "ACTIVE"}]}),
            "GET https://developers.hotmart.com/payments/api/v1/sales": (200, {"items": [{"purchase": {"transaction": "HP1"}}]}),
        })
        client = HotmartClient(_hotmart_creds(), timeout=5, transport=httpx.MockTransport(recorder))
        result = await client.lookup("buyer@example.com")

        assert result["provider"] == "hotmart"
        assert result["subscriptions"][0]["subscriber_code"] == "IY8BW62L"
        assert result["sales"][0]["purchase"]["transaction"] == "HP1"

        token_request = recorder.requests[0]
        expected = base64.b64encode(b"cid:csecret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected}"
        assert token_request.url.params["grant_type"] == "client_credentials"

        api_request = recorder.requests[1]
        assert api_request.headers["Authorization"] == "Bearer tok-1"
        assert api_request.url.params["subscriber_email"] == "buyer@example.com"

    async def test_token_is_reused(self):
        recorder = _Recorder({
            f"POST {HOTMART_AUTH_URL}": _token_response(),
            "GET https://developers.hotmart.com/payments/api/v1/subscriptions": (200, {"items": []}),
        })
        client = HotmartClient(_hotmart_creds(), timeout=5, transport=httpx.MockTransport(recorder))
        await client.lookup_subscriptions("a@example.com")
        await client.lookup_subscriptions("b@example.com")
        token_calls = [r for r in recorder.requests if r.method == "POST"]
        assert len(token_calls) == 1

    async def test_configured_basic_token_used(self):
        recorder = _Recorder({f"POST {HOTMART_AUTH_URL}": _token_response()})
        client = HotmartClient(
            _hotmart_creds(basic_token="Basic preset=="),
            timeout=5,
            transport=httpx.MockTransport(recorder),
        )
        await client._get_token()
        assert recorder.requests[0].headers["Authorization"] == "Basic preset=="

    async def test_sandbox_base_url(self):
        client = HotmartClient(_hotmart_creds(environment="sandbox"), timeout=5)
        assert client.api_base == HOTMART_SANDBOX_API_BASE

    async def test_token_refused(self):
        recorder = _Recorder({f"POST {HOTMART_AUTH_URL}": (401, {"error": "invalid_client"})})
        client = HotmartClient(_hotmart_creds(), timeout=5, transport=httpx.MockTransport(recorder))
        with pytest.raises(DownstreamAuthFailure) as exc_info:
            await client.lookup_subscriptions("buyer@example.com")
        assert exc_info.value.status_code == 401
        assert exc_info.value.provider == "hotmart"

    async def test_missing_credentials(self):
        client = HotmartClient(ProviderCredentials(provider="hotmart"), timeout=5)
        with pytest.raises(DownstreamAuthFailure, match="not configured"):
            await client.lookup_subscriptions("buyer@example.com")

    async def test_timeout(self):
        recorder = _Recorder({f"POST {HOTMART_AUTH_URL}": httpx.ReadTimeout("slow")})
        client = HotmartClient(_hotmart_creds(), timeout=5, transport=httpx.MockTransport(recorder))
        with pytest.raises(DownstreamAuthFailure, match="timed out"):
            await client.lookup_subscriptions("buyer@example.com")

    async def test_api_error_clears_revoked_token(self):
        recorder = _Recorder({
            f"POST {HOTMART_AUTH_URL}": _token_response(),
            "GET https://developers.hotmart.com/payments/api/v1/subscriptions": (401, {}),
        })
        client = HotmartClient(_hotmart_creds(), timeout=5, transport=httpx.MockTransport(recorder))
        with pytest.raises(DownstreamAuthFailure):
            await client.lookup_subscriptions("buyer@example.com")
        assert client._token is None


class TestDoppusClient:
    async def test_lookup(self):
        recorder = _Recorder({
            f"POST {DOPPUS_API_BASE}/token": _token_response(),
            f"GET {DOPPUS_API_BASE}/subscriptions": (200, {"data": [{"code": "REC1"}]}),
        })
        creds = ProviderCredentials(provider="doppus", client_id="did", client_secret="dsecret")
        client = DoppusClient(creds, timeout=5, transport=httpx.MockTransport(recorder))
        result = await client.lookup("cliente@exemplo.com")

        assert result["subscriptions"] == [{"code": "REC1"}]
        expected = base64.b64encode(b"did:dsecret").decode()
        assert recorder.requests[0].headers["Authorization"] == f"Basic {expected}"
        assert recorder.requests[1].url.params["customer.email"] == "cliente@exemplo.com"


class TestGetApiClient:
    async def test_cached_per_provider(self, session_factory, settings_override):
        settings_override(doppus_client_id="did", doppus_client_secret="dsecret")
        first = await get_api_client("doppus")
        second = await get_api_client("doppus")
        assert first is second
        assert isinstance(first, DoppusClient)

    async def test_unknown_provider(self, session_factory):
        with pytest.raises(DownstreamAuthFailure):
            await get_api_client("stripe")
