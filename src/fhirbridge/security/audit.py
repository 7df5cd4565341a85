"""
HIPAA Audit Trail

Audit events for every clinical data access made through a connector:
- FHIR read, create, update and delete
- Actor attribution from the caller context
- Request correlation by request id
- No resource content or PHI-bearing values
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable
import uuid

import structlog
from pydantic import BaseModel, Field

from fhirbridge.integrations.models import (
    CallerContext,
    OperationResult,
    RequestContext,
    Verb,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Audit Event Types
# =============================================================================

class AuditEventType(str, Enum):
    """Types of audit events."""
    FHIR_READ = "FHIR_READ"
    FHIR_CREATED = "FHIR_CREATED"
    FHIR_UPDATED = "FHIR_UPDATED"
    FHIR_DELETED = "FHIR_DELETED"


class AuditAction(str, Enum):
    """Action recorded for an audit event."""
    READ = "READ"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuditOutcomeStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


EVENT_ACTIONS: Dict[AuditEventType, AuditAction] = {
    AuditEventType.FHIR_READ: AuditAction.READ,
    AuditEventType.FHIR_CREATED: AuditAction.CREATE,
    AuditEventType.FHIR_UPDATED: AuditAction.UPDATE,
    AuditEventType.FHIR_DELETED: AuditAction.DELETE,
}

VERB_EVENTS: Dict[Verb, AuditEventType] = {
    Verb.SEARCH: AuditEventType.FHIR_READ,
    Verb.READ: AuditEventType.FHIR_READ,
    Verb.CREATE: AuditEventType.FHIR_CREATED,
    Verb.UPDATE: AuditEventType.FHIR_UPDATED,
    Verb.DELETE: AuditEventType.FHIR_DELETED,
}


def sanitize_query_params(params: Optional[Mapping[str, Any]]) -> List[str]:
    """
    Reduce search parameters to their names.

    Values such as names, MRNs and birth dates are PHI, so the audit only
    records which kind of search ran.
    """
    if not params:
        return []
    return sorted(str(key) for key in params)


# =============================================================================
# Audit Event Model
# =============================================================================

class AuditResource(BaseModel):
    """What was accessed."""
    resource_type: str
    resource_id: Optional[str] = None


class AuditRequest(BaseModel):
    """The outbound call the event describes."""
    request_id: str
    vendor_id: str
    method: str
    query_keys: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuditOutcome(BaseModel):
    """How the operation ended."""
    status: AuditOutcomeStatus
    error_kind: Optional[str] = None
    http_status: Optional[int] = None


class AuditEvent(BaseModel):
    """A single audit event."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: AuditEventType
    action: AuditAction
    actor_id: str
    resource: AuditResource
    request: AuditRequest
    outcome: AuditOutcome

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def resource_type(self) -> str:
        return self.resource.resource_type

    @property
    def resource_id(self) -> Optional[str]:
        return self.resource.resource_id

    @property
    def outcome_status(self) -> AuditOutcomeStatus:
        return self.outcome.status

    @property
    def timestamp(self) -> datetime:
        return self.request.timestamp

    def to_log_dict(self) -> dict:
        """Convert to dictionary for logging."""
        return {
            "audit_id": self.id,
            "occurred_at": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "action": self.action.value,
            "actor_id": self.actor_id,
            "vendor": self.request.vendor_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "request_id": self.request_id,
            "method": self.request.method,
            "query_keys": self.request.query_keys,
            "outcome": self.outcome_status.value,
            "error_kind": self.outcome.error_kind,
            "http_status": self.outcome.http_status,
        }


# =============================================================================
# Sinks
# =============================================================================

@runtime_checkable
class AuditSink(Protocol):
    """Destination for audit events (e.g. a tamper-evident audit store)."""

    async def record(
        self,
        event_type: AuditEventType,
        actor_id: str,
        resource: AuditResource,
        request: AuditRequest,
        outcome: AuditOutcome,
    ) -> None:
        ...


class AuditLogger:
    """
    Default audit sink.

    Writes each event as a structured "audit_event" log line and keeps a
    bounded in-memory buffer of recent events.
    """

    def __init__(self, max_buffer: int = 1000):
        self._buffer: List[AuditEvent] = []
        self._max_buffer = max_buffer

    async def record(
        self,
        event_type: AuditEventType,
        actor_id: str,
        resource: AuditResource,
        request: AuditRequest,
        outcome: AuditOutcome,
    ) -> None:
        event = AuditEvent(
            event_type=event_type,
            action=EVENT_ACTIONS[event_type],
            actor_id=actor_id,
            resource=resource,
            request=request,
            outcome=outcome,
        )

        logger.info("audit_event", **event.to_log_dict())

        self._buffer.append(event)
        if len(self._buffer) > self._max_buffer:
            self._buffer = self._buffer[-self._max_buffer:]

    def recent(
        self,
        limit: int = 100,
        request_id: Optional[str] = None,
    ) -> List[AuditEvent]:
        """Get recent audit events, optionally for one request."""
        events = self._buffer
        if request_id:
            events = [e for e in events if e.request_id == request_id]
        return events[-limit:]


# =============================================================================
# Connector Adapter
# =============================================================================

@dataclass
class AuditTrail:
    """
    Emits the audit event for a finished connector operation.

    Sink failures are logged and swallowed; auditing never changes the
    result returned to the caller.
    """
    sink: AuditSink
    vendor_id: str
    enabled: bool = True

    async def emit(
        self,
        ctx: RequestContext,
        caller: CallerContext,
        result: OperationResult,
        params: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if not self.enabled:
            return

        resource_id = ctx.resource_id
        if ctx.verb is Verb.CREATE:
            created_id = None
            if result.success and isinstance(result.payload, dict):
                created_id = result.payload.get("id")
            resource_id = created_id or "new"

        try:
            await self.sink.record(
                VERB_EVENTS[ctx.verb],
                caller.actor_id,
                AuditResource(
                    resource_type=ctx.resource_type,
                    resource_id=resource_id,
                ),
                AuditRequest(
                    request_id=ctx.request_id,
                    vendor_id=self.vendor_id,
                    method=ctx.method,
                    query_keys=sanitize_query_params(params),
                    timestamp=ctx.timestamp,
                ),
                AuditOutcome(
                    status=(
                        AuditOutcomeStatus.SUCCESS
                        if result.success
                        else AuditOutcomeStatus.FAILURE
                    ),
                    error_kind=result.classification.value if result.classification else None,
                    http_status=result.http_status,
                ),
            )
        except Exception as e:
            logger.warning(
                "Failed to record audit event",
                vendor=self.vendor_id,
                request_id=ctx.request_id,
                error_type=type(e).__name__,
            )
