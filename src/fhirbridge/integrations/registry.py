"""
Connector Registry

Holds the configured connectors keyed by vendor id and dispatches
integration requests to them. Created at application startup and closed
at shutdown; there is no module-level connector state.
"""

from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

import structlog

from fhirbridge.integrations.cerner import CernerConnector
from fhirbridge.integrations.connector import EHRConnector
from fhirbridge.integrations.epic import EpicConnector
from fhirbridge.integrations.errors import UnknownVendorError
from fhirbridge.integrations.models import CallerContext, OperationResult, Verb
from fhirbridge.security.audit import AuditSink

if TYPE_CHECKING:
    from fhirbridge.config import Settings

logger = structlog.get_logger(__name__)


class ConnectorRegistry:
    """
    Registry of vendor connectors.

    Usage:
        async with build_registry(get_settings()) as registry:
            result = await registry.dispatch("epic", Verb.READ, "Patient", "123")
    """

    def __init__(self):
        self._connectors: Dict[str, EHRConnector] = {}

    def register(self, connector: EHRConnector) -> None:
        """Register a connector under its vendor id."""
        if connector.vendor_id in self._connectors:
            raise ValueError(f"Connector already registered: {connector.vendor_id}")
        self._connectors[connector.vendor_id] = connector
        logger.info("Connector registered", vendor=connector.vendor_id)

    def get(self, vendor_id: str) -> EHRConnector:
        """
        Get the connector for a vendor.

        Raises:
            UnknownVendorError: If no connector is registered for the vendor
        """
        try:
            return self._connectors[vendor_id.lower()]
        except KeyError:
            raise UnknownVendorError(vendor_id) from None

    def vendors(self) -> List[str]:
        return sorted(self._connectors)

    def __contains__(self, vendor_id: str) -> bool:
        return vendor_id.lower() in self._connectors

    async def dispatch(
        self,
        vendor_id: str,
        verb: Verb,
        resource_type: str,
        resource_id: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        caller: Optional[CallerContext] = None,
    ) -> OperationResult:
        """
        Route one operation to a vendor connector.

        Raises:
            UnknownVendorError: If the vendor is not configured
            ValueError: If a required id or body is missing for the verb
        """
        connector = self.get(vendor_id)

        if verb in (Verb.READ, Verb.UPDATE, Verb.DELETE) and not resource_id:
            raise ValueError(f"{verb.value} requires a resource id")
        if verb in (Verb.CREATE, Verb.UPDATE) and body is None:
            raise ValueError(f"{verb.value} requires a resource body")

        if verb is Verb.SEARCH:
            return await connector.search(resource_type, dict(params or {}), caller=caller)
        if verb is Verb.READ:
            return await connector.read(resource_type, resource_id, caller=caller)
        if verb is Verb.CREATE:
            return await connector.create(resource_type, body, caller=caller)
        if verb is Verb.UPDATE:
            return await connector.update(resource_type, resource_id, body, caller=caller)
        return await connector.delete(resource_type, resource_id, caller=caller)

    async def aclose(self) -> None:
        """Close every connector's HTTP client."""
        for connector in self._connectors.values():
            await connector.aclose()
        logger.info("Connector registry closed", vendors=self.vendors())

    async def __aenter__(self) -> "ConnectorRegistry":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def build_registry(
    settings: "Settings",
    audit_sink: Optional[AuditSink] = None,
) -> ConnectorRegistry:
    """Create a connector for every configured vendor."""
    registry = ConnectorRegistry()
    app = settings.app

    options = dict(
        audit_sink=audit_sink,
        audit_enabled=app.audit_enabled,
        request_timeout=app.request_timeout_seconds,
        operation_timeout=app.operation_timeout_seconds,
        token_buffer_seconds=app.token_expiry_buffer_seconds,
    )

    if settings.epic.is_configured:
        registry.register(EpicConnector(settings.epic.to_connector_config(), **options))
    if settings.cerner.is_configured:
        registry.register(CernerConnector(settings.cerner.to_connector_config(), **options))

    if not registry.vendors():
        logger.warning("No EHR vendors configured")
    return registry
