"""
FHIRBridge Security Module

HIPAA audit trail for clinical data access.
"""

from fhirbridge.security.audit import (
    AuditAction,
    AuditEvent,
    AuditEventType,
    AuditLogger,
    AuditOutcome,
    AuditOutcomeStatus,
    AuditRequest,
    AuditResource,
    AuditSink,
    AuditTrail,
    sanitize_query_params,
)

__all__ = [
    "AuditAction",
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "AuditOutcome",
    "AuditOutcomeStatus",
    "AuditRequest",
    "AuditResource",
    "AuditSink",
    "AuditTrail",
    "sanitize_query_params",
]
