"""
Connector Exceptions

Raised inside the connector framework and converted to OperationResult
failures at the pipeline boundary. Messages never carry client secrets,
tokens or response bodies.
"""

from typing import Optional

from fhirbridge.integrations.models import ErrorKind


class FHIRBridgeError(Exception):
    """Base class for connector errors."""


class VendorError(FHIRBridgeError):
    """A vendor call failed outside the request pipeline."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.VENDOR_UNAVAILABLE,
        status: Optional[int] = None,
    ) -> None:
        self.kind = kind
        self.status = status
        self.message = message
        super().__init__(message)


class AuthError(VendorError):
    """Authentication or token refresh failed."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.AUTH_FAILURE,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message, kind=kind, status=status)


class ConfigurationError(AuthError):
    """Static misconfiguration; retrying cannot succeed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ErrorKind.CONFIGURATION_ERROR)


class UnknownVendorError(FHIRBridgeError, KeyError):
    """No connector is registered for the requested vendor."""

    def __init__(self, vendor_id: str) -> None:
        self.vendor_id = vendor_id
        super().__init__(f"Unsupported EHR vendor: {vendor_id}")

    def __str__(self) -> str:
        return self.args[0]


class UnsupportedResourceError(FHIRBridgeError, ValueError):
    """The vendor does not declare the requested interaction."""

    def __init__(self, vendor_id: str, resource_type: str, interaction: str) -> None:
        self.vendor_id = vendor_id
        self.resource_type = resource_type
        self.interaction = interaction
        super().__init__(
            f"Resource type {resource_type} does not support {interaction} on {vendor_id}"
        )
