"""
Tests for Vendor Authentication Strategies

Static-endpoint and discovery-based token acquisition, refresh grants
and capability statement caching.
"""

from urllib.parse import parse_qs
import asyncio
import base64

import httpx
import pytest

from fhirbridge.integrations.auth import (
    CapabilityCache,
    DiscoveryStrategy,
    StaticEndpointStrategy,
    find_token_endpoint,
    parse_capabilities,
)
from fhirbridge.integrations.cerner import TOKEN_URL_TEMPLATE
from fhirbridge.integrations.errors import AuthError, ConfigurationError, VendorError
from fhirbridge.integrations.models import ErrorKind, TokenState

from fakes import (
    CERNER_BASE,
    CERNER_TOKEN_URL,
    EPIC_BASE,
    EPIC_TOKEN_URL,
    FakeVendor,
    capability_statement,
    cerner_config,
    epic_config,
    fhir_json,
)


def form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestTokenEndpointDiscovery:
    """Test extraction of the token endpoint from a CapabilityStatement."""

    def test_finds_nested_token_uri(self):
        assert find_token_endpoint(capability_statement(EPIC_TOKEN_URL)) == EPIC_TOKEN_URL

    def test_missing_extension(self):
        assert find_token_endpoint(capability_statement(token_url=None)) is None

    @pytest.mark.parametrize("statement", [
        {},
        {"rest": []},
        {"rest": [{"security": None}]},
        {"rest": [{"security": {"extension": [{"url": "other"}]}}]},
        {"rest": ["not-a-dict"]},
    ])
    def test_unexpected_shapes(self, statement):
        assert find_token_endpoint(statement) is None

    def test_parse_capabilities(self):
        capabilities = parse_capabilities(capability_statement())
        assert "search-type" in capabilities["Patient"].interactions
        assert "create" not in capabilities["Patient"].interactions
        assert "patient" in capabilities["Condition"].search_params


class TestStaticEndpointStrategy:
    """Test the tenant-based token endpoint."""

    @pytest.mark.asyncio
    async def test_client_credentials_grant(self):
        fake = FakeVendor(CERNER_BASE, CERNER_TOKEN_URL)
        async with httpx.AsyncClient(transport=fake.transport) as http:
            strategy = StaticEndpointStrategy(cerner_config(), http, TOKEN_URL_TEMPLATE)
            state = await strategy.authenticate()

        assert state.access_token == "token-1"
        assert state.expires_at is not None
        assert len(fake.token_requests) == 1

        sent = form(fake.token_requests[0])
        assert sent["grant_type"] == "client_credentials"
        assert sent["client_id"] == "cerner-client"
        assert sent["client_secret"] == "cerner-secret"
        assert sent["scope"] == "system/Patient.read system/Observation.read system/Condition.read"

    @pytest.mark.asyncio
    async def test_missing_tenant_is_configuration_error(self):
        fake = FakeVendor(CERNER_BASE, CERNER_TOKEN_URL)
        async with httpx.AsyncClient(transport=fake.transport) as http:
            strategy = StaticEndpointStrategy(cerner_config(tenant=""), http, TOKEN_URL_TEMPLATE)
            with pytest.raises(ConfigurationError):
                await strategy.authenticate()

        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        fake = FakeVendor(CERNER_BASE, CERNER_TOKEN_URL)
        fake.token_replies.append(httpx.Response(401, json={"error": "invalid_client"}))
        async with httpx.AsyncClient(transport=fake.transport) as http:
            strategy = StaticEndpointStrategy(cerner_config(), http, TOKEN_URL_TEMPLATE)
            with pytest.raises(AuthError) as exc_info:
                await strategy.authenticate()

        assert exc_info.value.kind is ErrorKind.AUTH_FAILURE
        assert exc_info.value.status == 401
        assert "cerner-secret" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_token_endpoint_down(self):
        fake = FakeVendor(CERNER_BASE, CERNER_TOKEN_URL)
        fake.token_replies.append(httpx.ConnectError("connection refused"))
        async with httpx.AsyncClient(transport=fake.transport) as http:
            strategy = StaticEndpointStrategy(cerner_config(), http, TOKEN_URL_TEMPLATE)
            with pytest.raises(AuthError) as exc_info:
                await strategy.authenticate()

        assert exc_info.value.kind is ErrorKind.VENDOR_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_malformed_token_response(self):
        fake = FakeVendor(CERNER_BASE, CERNER_TOKEN_URL)
        fake.token_replies.append(httpx.Response(200, json={"token_type": "Bearer"}))
        async with httpx.AsyncClient(transport=fake.transport) as http:
            strategy = StaticEndpointStrategy(cerner_config(), http, TOKEN_URL_TEMPLATE)
            with pytest.raises(AuthError):
                await strategy.authenticate()

    @pytest.mark.asyncio
    async def test_refresh_grant_uses_basic_auth(self):
        fake = FakeVendor(CERNER_BASE, CERNER_TOKEN_URL)
        async with httpx.AsyncClient(transport=fake.transport) as http:
            strategy = StaticEndpointStrategy(cerner_config(), http, TOKEN_URL_TEMPLATE)
            state = await strategy.refresh(TokenState(refresh_token="refresh-0"))

        request = fake.token_requests[0]
        sent = form(request)
        assert sent["grant_type"] == "refresh_token"
        assert sent["refresh_token"] == "refresh-0"
        assert "client_secret" not in sent

        expected = base64.b64encode(b"cerner-client:cerner-secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        assert state.refresh_token == "refresh-0"

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token_authenticates(self):
        fake = FakeVendor(CERNER_BASE, CERNER_TOKEN_URL)
        async with httpx.AsyncClient(transport=fake.transport) as http:
            strategy = StaticEndpointStrategy(cerner_config(), http, TOKEN_URL_TEMPLATE)
            state = await strategy.refresh(TokenState())

        assert state.access_token == "token-1"
        assert form(fake.token_requests[0])["grant_type"] == "client_credentials"


class TestDiscoveryStrategy:
    """Test token endpoint discovery from the capability statement."""

    @pytest.mark.asyncio
    async def test_discovers_then_authenticates(self):
        fake = FakeVendor(EPIC_BASE, EPIC_TOKEN_URL)
        async with httpx.AsyncClient(transport=fake.transport) as http:
            cache = CapabilityCache(http, epic_config())
            strategy = DiscoveryStrategy(epic_config(), http, cache)
            state = await strategy.authenticate()
            await strategy.authenticate()

        assert state.access_token == "token-1"
        assert [str(r.url) for r in fake.requests] == [
            f"{EPIC_BASE}/metadata",
            EPIC_TOKEN_URL,
            EPIC_TOKEN_URL,
        ]
        assert form(fake.token_requests[0])["scope"] == "system/*.read system/*.write"
        assert cache.loaded

    @pytest.mark.asyncio
    async def test_missing_extension_makes_no_token_call(self):
        fake = FakeVendor(
            EPIC_BASE,
            EPIC_TOKEN_URL,
            metadata=capability_statement(token_url=None),
        )
        async with httpx.AsyncClient(transport=fake.transport) as http:
            cache = CapabilityCache(http, epic_config())
            strategy = DiscoveryStrategy(epic_config(), http, cache)
            with pytest.raises(ConfigurationError) as exc_info:
                await strategy.authenticate()

        assert exc_info.value.kind is ErrorKind.CONFIGURATION_ERROR
        assert fake.token_requests == []
        assert len(fake.metadata_requests) == 1

    @pytest.mark.asyncio
    async def test_metadata_outage_is_not_configuration_error(self):
        fake = FakeVendor(EPIC_BASE, EPIC_TOKEN_URL)
        fake.metadata_replies.append(httpx.Response(503))
        async with httpx.AsyncClient(transport=fake.transport) as http:
            cache = CapabilityCache(http, epic_config())
            strategy = DiscoveryStrategy(epic_config(), http, cache)
            with pytest.raises(AuthError) as exc_info:
                await strategy.authenticate()

        assert not isinstance(exc_info.value, ConfigurationError)
        assert exc_info.value.kind is ErrorKind.VENDOR_UNAVAILABLE
        assert not cache.loaded


class TestCapabilityCache:
    """Test single-flight capability statement caching."""

    @pytest.mark.asyncio
    async def test_concurrent_first_fetch_is_single_flight(self):
        calls = []

        async def handler(request):
            calls.append(request)
            await asyncio.sleep(0.01)
            return fhir_json(capability_statement())

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            cache = CapabilityCache(http, epic_config())
            results = await asyncio.gather(*(cache.get() for _ in range(10)))

        assert len(calls) == 1
        assert all(r is results[0] for r in results)

    @pytest.mark.asyncio
    async def test_cached_until_explicit_refresh(self):
        fake = FakeVendor(EPIC_BASE, EPIC_TOKEN_URL)
        async with httpx.AsyncClient(transport=fake.transport) as http:
            cache = CapabilityCache(http, epic_config())
            await cache.get()
            await cache.get()
            assert len(fake.metadata_requests) == 1

            await cache.get(refresh=True)
            assert len(fake.metadata_requests) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply,kind", [
        (httpx.Response(500), ErrorKind.VENDOR_UNAVAILABLE),
        (httpx.Response(404), ErrorKind.CONFIGURATION_ERROR),
        (httpx.Response(200, content=b"<html>"), ErrorKind.CONFIGURATION_ERROR),
        (httpx.ConnectError("refused"), ErrorKind.VENDOR_UNAVAILABLE),
    ])
    async def test_fetch_failures(self, reply, kind):
        fake = FakeVendor(EPIC_BASE, EPIC_TOKEN_URL)
        fake.metadata_replies.append(reply)
        async with httpx.AsyncClient(transport=fake.transport) as http:
            cache = CapabilityCache(http, epic_config())
            with pytest.raises(VendorError) as exc_info:
                await cache.get()

        assert exc_info.value.kind is kind
        assert not cache.loaded
