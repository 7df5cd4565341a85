"""
Vendor Authentication Strategies

OAuth 2.0 client-credentials authentication for EHR vendors:
- Static endpoint: token URL built from configuration (e.g. a tenant id)
- Discovery: token URL read from the vendor capability statement
- Refresh token grant with fallback to full authentication
- Capability statement caching (single-flight, never auto-expired)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Tuple
import asyncio

import httpx
import structlog

from fhirbridge.integrations.errors import AuthError, ConfigurationError, VendorError
from fhirbridge.integrations.models import ConnectorConfig, ErrorKind, TokenState

logger = structlog.get_logger(__name__)


SMART_OAUTH_URIS_EXTENSION = (
    "http://fhir-registry.smarthealthit.org/StructureDefinition/oauth-uris"
)


# =============================================================================
# Capability Statement
# =============================================================================

@dataclass(frozen=True)
class ResourceCapability:
    """Interactions a vendor supports for one resource type."""
    type: str
    interactions: FrozenSet[str]
    search_params: Tuple[str, ...] = ()


def parse_capabilities(statement: Dict[str, Any]) -> Dict[str, ResourceCapability]:
    """Index the resources declared in a CapabilityStatement by type."""
    capabilities: Dict[str, ResourceCapability] = {}
    for rest in statement.get("rest") or []:
        if not isinstance(rest, dict):
            continue
        for resource in rest.get("resource") or []:
            if not isinstance(resource, dict) or not resource.get("type"):
                continue
            capabilities[resource["type"]] = ResourceCapability(
                type=resource["type"],
                interactions=frozenset(
                    i.get("code") for i in resource.get("interaction") or []
                    if isinstance(i, dict) and i.get("code")
                ),
                search_params=tuple(
                    p.get("name") for p in resource.get("searchParam") or []
                    if isinstance(p, dict) and p.get("name")
                ),
            )
    return capabilities


def find_token_endpoint(statement: Dict[str, Any]) -> Optional[str]:
    """
    Locate the OAuth token endpoint in a CapabilityStatement.

    Looks for the SMART oauth-uris extension under rest[].security and
    returns its nested "token" valueUri. Returns None when the document
    does not have the expected shape.
    """
    for rest in statement.get("rest") or []:
        if not isinstance(rest, dict):
            continue
        security = rest.get("security")
        if not isinstance(security, dict):
            continue
        for ext in security.get("extension") or []:
            if not isinstance(ext, dict) or ext.get("url") != SMART_OAUTH_URIS_EXTENSION:
                continue
            for inner in ext.get("extension") or []:
                if isinstance(inner, dict) and inner.get("url") == "token":
                    uri = inner.get("valueUri")
                    if isinstance(uri, str) and uri:
                        return uri
    return None


class CapabilityCache:
    """
    Per-connector cache of the vendor CapabilityStatement.

    The first fetch is single-flight: concurrent callers wait for one
    request. The cached document is only replaced by an explicit refresh.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        config: ConnectorConfig,
    ):
        self._http = http
        self._config = config
        self._statement: Optional[Dict[str, Any]] = None
        self._capabilities: Dict[str, ResourceCapability] = {}
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def metadata_url(self) -> str:
        return f"{self._config.base_url}/metadata"

    @property
    def statement(self) -> Optional[Dict[str, Any]]:
        return self._statement

    @property
    def capabilities(self) -> Dict[str, ResourceCapability]:
        return self._capabilities

    @property
    def loaded(self) -> bool:
        return self._statement is not None

    async def get(self, refresh: bool = False) -> Dict[str, Any]:
        """
        Return the capability statement, fetching it if needed.

        Args:
            refresh: Re-fetch even if a statement is cached

        Raises:
            VendorError: If the statement cannot be fetched
        """
        if self._statement is not None and not refresh:
            return self._statement

        seen_generation = self._generation
        async with self._lock:
            if self._statement is not None:
                # Another caller fetched (or re-fetched) while we waited
                if not refresh or self._generation != seen_generation:
                    return self._statement

            statement = await self._fetch()
            self._statement = statement
            self._capabilities = parse_capabilities(statement)
            self._generation += 1

            logger.info(
                "Capability statement loaded",
                vendor=self._config.vendor_id,
                resources=len(self._capabilities),
            )
            return statement

    async def _fetch(self) -> Dict[str, Any]:
        vendor = self._config.vendor_id
        logger.info("Fetching capability statement", vendor=vendor)

        try:
            response = await self._http.get(
                self.metadata_url,
                headers={"Accept": "application/fhir+json"},
            )
        except httpx.HTTPError as exc:
            logger.error(
                "Capability statement request failed",
                vendor=vendor,
                error_type=type(exc).__name__,
            )
            raise VendorError(
                f"Failed to fetch {vendor} capability statement: {type(exc).__name__}",
                kind=ErrorKind.VENDOR_UNAVAILABLE,
            ) from exc

        if response.status_code >= 500:
            raise VendorError(
                f"{vendor} capability statement returned HTTP {response.status_code}",
                kind=ErrorKind.VENDOR_UNAVAILABLE,
                status=response.status_code,
            )
        if response.status_code >= 400:
            raise VendorError(
                f"{vendor} capability statement returned HTTP {response.status_code}",
                kind=ErrorKind.CONFIGURATION_ERROR,
                status=response.status_code,
            )

        try:
            statement = response.json()
        except ValueError as exc:
            raise VendorError(
                f"{vendor} capability statement is not valid JSON",
                kind=ErrorKind.CONFIGURATION_ERROR,
                status=response.status_code,
            ) from exc

        if not isinstance(statement, dict):
            raise VendorError(
                f"{vendor} capability statement is not a JSON object",
                kind=ErrorKind.CONFIGURATION_ERROR,
                status=response.status_code,
            )
        return statement


# =============================================================================
# Strategies
# =============================================================================

class AuthenticationStrategy(ABC):
    """
    Vendor-specific procedure for obtaining access tokens.

    Subclasses only decide where the token endpoint is; the grants
    themselves are standard OAuth 2.0 form posts.
    """

    def __init__(self, config: ConnectorConfig, http: httpx.AsyncClient):
        self.config = config
        self._http = http

    @property
    def scope(self) -> str:
        return self.config.option("scope")

    @abstractmethod
    async def token_endpoint(self) -> str:
        """Resolve the token endpoint URL."""

    async def authenticate(self) -> TokenState:
        """
        Perform a client-credentials grant.

        Returns:
            Fully populated TokenState

        Raises:
            AuthError: On HTTP or network failure, or a malformed response
            ConfigurationError: If the token endpoint cannot be resolved
        """
        url = await self.token_endpoint()
        logger.info("Authenticating with vendor", vendor=self.config.vendor_id)

        data = {
            "grant_type": "client_credentials",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        if self.scope:
            data["scope"] = self.scope

        state = await self._request_token(url, data)
        logger.info(
            "Authenticated with vendor",
            vendor=self.config.vendor_id,
            expires_at=state.expires_at.isoformat(),
        )
        return state

    async def refresh(self, existing: TokenState) -> TokenState:
        """
        Renew a token with the refresh-token grant.

        Without a refresh token this degrades to authenticate().

        Raises:
            AuthError: If the refresh grant fails
        """
        if not existing.refresh_token:
            return await self.authenticate()

        url = await self.token_endpoint()
        state = await self._request_token(
            url,
            {
                "grant_type": "refresh_token",
                "refresh_token": existing.refresh_token,
                "client_id": self.config.client_id,
            },
            auth=(self.config.client_id, self.config.client_secret),
            previous_refresh_token=existing.refresh_token,
        )
        logger.info("Refreshed vendor access token", vendor=self.config.vendor_id)
        return state

    async def _request_token(
        self,
        url: str,
        data: Dict[str, str],
        auth: Optional[Tuple[str, str]] = None,
        previous_refresh_token: Optional[str] = None,
    ) -> TokenState:
        vendor = self.config.vendor_id
        grant = data.get("grant_type")

        try:
            response = await self._http.post(
                url,
                data=data,
                auth=auth,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.error(
                "Token request failed",
                vendor=vendor,
                grant_type=grant,
                error_type=type(exc).__name__,
            )
            raise AuthError(
                f"{vendor} token endpoint unreachable: {type(exc).__name__}",
                kind=ErrorKind.VENDOR_UNAVAILABLE,
            ) from exc

        if response.status_code != 200:
            kind = (
                ErrorKind.VENDOR_UNAVAILABLE
                if response.status_code >= 500
                else ErrorKind.AUTH_FAILURE
            )
            logger.error(
                "Token request rejected",
                vendor=vendor,
                grant_type=grant,
                status=response.status_code,
            )
            raise AuthError(
                f"{vendor} token endpoint returned HTTP {response.status_code}",
                kind=kind,
                status=response.status_code,
            )

        try:
            return TokenState.from_token_response(
                response.json(),
                previous_refresh_token=previous_refresh_token,
            )
        except ValueError as exc:
            raise AuthError(
                f"{vendor} token endpoint returned a malformed response",
                status=response.status_code,
            ) from exc


class StaticEndpointStrategy(AuthenticationStrategy):
    """
    Token endpoint built from static configuration.

    Args:
        config: Connector configuration
        http: Shared HTTP client
        url_template: Template formatted with config.vendor_specific,
                      e.g. "https://auth.example.com/tenants/{tenant}/token"
    """

    def __init__(
        self,
        config: ConnectorConfig,
        http: httpx.AsyncClient,
        url_template: str,
    ):
        super().__init__(config, http)
        self.url_template = url_template

    async def token_endpoint(self) -> str:
        try:
            url = self.url_template.format(**self.config.vendor_specific)
        except KeyError as exc:
            raise ConfigurationError(
                f"{self.config.vendor_id} token endpoint needs '{exc.args[0]}'"
            ) from exc

        # An empty placeholder value leaves a double slash behind
        if "//" in url.split("://", 1)[-1]:
            raise ConfigurationError(
                f"{self.config.vendor_id} token endpoint has an empty path segment"
            )
        return url


class DiscoveryStrategy(AuthenticationStrategy):
    """
    Token endpoint discovered from the vendor capability statement.

    The statement is fetched on first use and cached; if it does not
    declare a token endpoint, authentication fails with a configuration
    error and no token request is made.
    """

    def __init__(
        self,
        config: ConnectorConfig,
        http: httpx.AsyncClient,
        capabilities: CapabilityCache,
    ):
        super().__init__(config, http)
        self.capabilities = capabilities

    async def token_endpoint(self) -> str:
        try:
            statement = await self.capabilities.get()
        except VendorError as exc:
            if exc.kind is ErrorKind.CONFIGURATION_ERROR:
                raise ConfigurationError(exc.message) from exc
            raise AuthError(exc.message, kind=exc.kind, status=exc.status) from exc

        url = find_token_endpoint(statement)
        if not url:
            logger.error(
                "Token endpoint not found in capability statement",
                vendor=self.config.vendor_id,
            )
            raise ConfigurationError(
                f"Unable to determine {self.config.vendor_id} token endpoint "
                "from capability statement"
            )
        return url
