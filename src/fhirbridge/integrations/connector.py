"""
EHR Connector Base

Vendor-agnostic FHIR R4 connector:
- CRUD and search verbs over the request pipeline
- Capability statement access
- Vendor hooks: authentication strategy, headers, identifier
  search convention, write-side defaulting
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import copy

import httpx
import structlog

from fhirbridge.integrations.auth import AuthenticationStrategy, CapabilityCache
from fhirbridge.integrations.models import (
    DEFAULT_EXPIRY_BUFFER_SECONDS,
    CallerContext,
    ConnectorConfig,
    OperationResult,
    Verb,
)
from fhirbridge.integrations.pipeline import FHIR_JSON, RequestPipeline
from fhirbridge.integrations.tokens import TokenManager
from fhirbridge.security.audit import AuditLogger, AuditSink, AuditTrail

logger = structlog.get_logger(__name__)


def ensure_extension(resource: Dict[str, Any], extension: Dict[str, Any]) -> None:
    """
    Append an extension to a resource unless one with the same url exists.

    A missing or null "extension" is replaced by a list; non-dict entries
    are kept but never matched.
    """
    extensions = resource.get("extension") or []
    resource["extension"] = extensions
    url = extension["url"]
    if not any(isinstance(ext, dict) and ext.get("url") == url for ext in extensions):
        extensions.append(extension)


class EHRConnector(ABC):
    """
    Base connector shared by all EHR vendors.

    One instance per configured vendor, shared by concurrent callers for
    the process lifetime. Subclasses supply the authentication strategy
    and any vendor quirks; the verbs themselves add no business logic.

    Usage:
        async with EpicConnector(config) as epic:
            result = await epic.search("Patient", {"family": "Smith"})
            if result.success:
                patients = bundle_resources(result.payload)
    """

    # Identifier system used for patient lookups by external id (e.g. MRN)
    IDENTIFIER_SYSTEM = ""

    def __init__(
        self,
        config: ConnectorConfig,
        audit_sink: Optional[AuditSink] = None,
        audit_enabled: bool = True,
        request_timeout: float = 30.0,
        operation_timeout: Optional[float] = 90.0,
        token_buffer_seconds: int = DEFAULT_EXPIRY_BUFFER_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(request_timeout),
            transport=transport,
        )

        self.capabilities = CapabilityCache(self._http, config)
        self.strategy = self._build_strategy()
        self.tokens = TokenManager(self.strategy, buffer_seconds=token_buffer_seconds)
        self.audit = AuditTrail(
            sink=audit_sink or AuditLogger(),
            vendor_id=config.vendor_id,
            enabled=audit_enabled,
        )
        self.pipeline = RequestPipeline(
            self._http,
            config,
            self.tokens,
            self.audit,
            default_headers=self.default_headers(),
            operation_timeout=operation_timeout,
        )

        logger.info(
            "EHR connector initialized",
            vendor=self.vendor_id,
            base_url=config.base_url,
            fhir_version=config.fhir_version,
        )

    @property
    def vendor_id(self) -> str:
        return self.config.vendor_id

    # =========================================================================
    # Vendor Hooks
    # =========================================================================

    @abstractmethod
    def _build_strategy(self) -> AuthenticationStrategy:
        """Create the vendor's authentication strategy."""

    def vendor_headers(self) -> Dict[str, str]:
        """Extra headers sent with every FHIR call."""
        return {}

    def default_headers(self) -> Dict[str, str]:
        return {"Accept": FHIR_JSON, **self.vendor_headers()}

    def external_identifier(self, value: str) -> str:
        """Format an external id as a FHIR identifier token."""
        if self.IDENTIFIER_SYSTEM:
            return f"{self.IDENTIFIER_SYSTEM}|{value}"
        return value

    def prepare_for_create(self, resource_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply vendor-required defaults to a resource before creation.

        Works on a deep copy; the caller's dict is never modified.
        """
        return copy.deepcopy(body)

    # =========================================================================
    # FHIR Operations
    # =========================================================================

    async def search(
        self,
        resource_type: str,
        params: Optional[Dict[str, Any]] = None,
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """Search for resources; the payload is the vendor's Bundle."""
        return await self.pipeline.execute(
            Verb.SEARCH,
            resource_type,
            params=params or {},
            caller=caller,
        )

    async def read(
        self,
        resource_type: str,
        resource_id: str,
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """Read a single resource."""
        return await self.pipeline.execute(
            Verb.READ,
            resource_type,
            resource_id=resource_id,
            caller=caller,
        )

    async def create(
        self,
        resource_type: str,
        body: Dict[str, Any],
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """Create a resource after vendor defaulting."""
        return await self.pipeline.execute(
            Verb.CREATE,
            resource_type,
            body=self.prepare_for_create(resource_type, body),
            caller=caller,
        )

    async def update(
        self,
        resource_type: str,
        resource_id: str,
        body: Dict[str, Any],
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """Replace an existing resource."""
        return await self.pipeline.execute(
            Verb.UPDATE,
            resource_type,
            resource_id=resource_id,
            body=body,
            caller=caller,
        )

    async def delete(
        self,
        resource_type: str,
        resource_id: str,
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """Delete a resource."""
        return await self.pipeline.execute(
            Verb.DELETE,
            resource_type,
            resource_id=resource_id,
            caller=caller,
        )

    async def find_patient_by_external_id(
        self,
        value: str,
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """Search patients by external identifier (e.g. MRN)."""
        return await self.search(
            "Patient",
            {"identifier": self.external_identifier(value)},
            caller=caller,
        )

    # =========================================================================
    # Capabilities
    # =========================================================================

    async def capability_statement(self, refresh: bool = False) -> Dict[str, Any]:
        """
        Get the vendor CapabilityStatement (cached after first fetch).

        Raises:
            VendorError: If the statement cannot be fetched
        """
        return await self.capabilities.get(refresh=refresh)

    def is_supported(self, resource_type: str, interaction: str = Verb.READ.value) -> bool:
        """
        Check whether the vendor declares an interaction for a resource type.

        Returns True while capabilities are not loaded yet.
        """
        if not self.capabilities.loaded:
            return True
        capability = self.capabilities.capabilities.get(resource_type)
        return capability is not None and interaction in capability.interactions

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "EHRConnector":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
