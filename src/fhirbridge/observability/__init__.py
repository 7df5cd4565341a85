"""
FHIRBridge Observability

Structured logging with PHI and secret scrubbing.
"""

from fhirbridge.observability.logging import (
    configure_logging,
    get_logger,
    scrub_sensitive_fields,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "scrub_sensitive_fields",
]
