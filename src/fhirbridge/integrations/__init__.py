"""
FHIRBridge EHR Integrations

Multi-vendor FHIR R4 connector framework:
- Epic (discovery-based authentication)
- Cerner (static tenant token endpoint)
- Token lifecycle with single-flight refresh
- Request pipeline with one retry after an auth failure

Connectors live in their own modules:
    from fhirbridge.integrations.epic import EpicConnector
    from fhirbridge.integrations.cerner import CernerConnector
    from fhirbridge.integrations.registry import ConnectorRegistry, build_registry
"""

from fhirbridge.integrations.errors import (
    AuthError,
    ConfigurationError,
    FHIRBridgeError,
    UnknownVendorError,
    UnsupportedResourceError,
    VendorError,
)
from fhirbridge.integrations.models import (
    CallerContext,
    ConnectorConfig,
    ErrorKind,
    OperationResult,
    RequestContext,
    TokenState,
    Verb,
    bundle_resources,
    bundle_total,
)

__all__ = [
    # Errors
    "AuthError",
    "ConfigurationError",
    "FHIRBridgeError",
    "UnknownVendorError",
    "UnsupportedResourceError",
    "VendorError",
    # Models
    "CallerContext",
    "ConnectorConfig",
    "ErrorKind",
    "OperationResult",
    "RequestContext",
    "TokenState",
    "Verb",
    "bundle_resources",
    "bundle_total",
]
