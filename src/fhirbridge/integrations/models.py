"""
Connector Data Model

Value types shared by the connector framework:
- Connector configuration (immutable)
- Token state (replaced atomically, never mutated in place)
- Per-call request context
- Operation results and failure taxonomy
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional
import time
import uuid

from pydantic import BaseModel


DEFAULT_EXPIRY_BUFFER_SECONDS = 60

# Used when a vendor omits expires_in; a token must never have an unknown lifetime
DEFAULT_EXPIRES_IN_SECONDS = 300

# Upper bound on a vendor-declared lifetime (30 days)
MAX_EXPIRES_IN_SECONDS = 30 * 24 * 3600


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class ConnectorConfig:
    """
    Per-vendor connector configuration.

    Built once at startup from settings and never mutated.
    """
    vendor_id: str
    client_id: str
    client_secret: str = field(repr=False)
    base_url: str
    fhir_version: str = "R4"
    vendor_specific: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))
        object.__setattr__(
            self, "vendor_specific", MappingProxyType(dict(self.vendor_specific))
        )

    def option(self, key: str, default: str = "") -> str:
        """Get a vendor-specific option."""
        return self.vendor_specific.get(key, default)

    def flag(self, key: str) -> bool:
        """Get a vendor-specific boolean flag."""
        return self.option(key).strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# Token State
# =============================================================================

@dataclass(frozen=True)
class TokenState:
    """
    OAuth token state owned by a single connector.

    Instances are immutable: refresh produces a new TokenState that replaces
    the old one in a single assignment, so readers never observe a token
    without its expiry.
    """
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        if self.access_token and self.expires_at is None:
            raise ValueError("An access token requires an expiry")

    @classmethod
    def from_token_response(
        cls,
        data: Dict[str, Any],
        previous_refresh_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "TokenState":
        """
        Build token state from an OAuth token endpoint response.

        Args:
            data: JSON body with access_token, optional refresh_token, expires_in
            previous_refresh_token: Kept when the vendor does not rotate it
            now: Reference time (defaults to current UTC time)

        Raises:
            ValueError: If the response has no usable access token
        """
        if not isinstance(data, dict):
            raise ValueError("Token response is not a JSON object")

        access_token = data.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise ValueError("Token response has no access_token")

        try:
            expires_in = int(data.get("expires_in", DEFAULT_EXPIRES_IN_SECONDS))
        except (TypeError, ValueError, OverflowError):
            raise ValueError("Token response has an invalid expires_in")
        if not 0 <= expires_in <= MAX_EXPIRES_IN_SECONDS:
            raise ValueError("Token response has an out-of-range expires_in")

        now = now or datetime.now(timezone.utc)
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=now + timedelta(seconds=expires_in),
        )

    @property
    def is_empty(self) -> bool:
        return self.access_token is None and self.refresh_token is None

    def is_expired(
        self,
        buffer_seconds: int = DEFAULT_EXPIRY_BUFFER_SECONDS,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Check whether the token must be renewed before use.

        A missing token counts as expired. The buffer avoids sending a token
        that expires while the request is in flight; reaching the buffer
        edge exactly counts as expired.
        """
        if not self.access_token or self.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at - timedelta(seconds=buffer_seconds)


# =============================================================================
# Operations
# =============================================================================

class Verb(str, Enum):
    """FHIR interactions supported by the connector (values are FHIR codes)."""
    SEARCH = "search-type"
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def method(self) -> str:
        return _VERB_METHODS[self]


_VERB_METHODS = {
    Verb.SEARCH: "GET",
    Verb.READ: "GET",
    Verb.CREATE: "POST",
    Verb.UPDATE: "PUT",
    Verb.DELETE: "DELETE",
}


class ErrorKind(str, Enum):
    """Failure classification returned to callers."""
    AUTH_FAILURE = "AuthFailure"
    NOT_FOUND = "NotFound"
    VENDOR_REJECTED = "VendorRejected"
    VENDOR_UNAVAILABLE = "VendorUnavailable"
    CONFIGURATION_ERROR = "ConfigurationError"
    TIMEOUT = "Timeout"

    @property
    def retryable(self) -> bool:
        """Whether a higher layer may retry the operation."""
        return self in (ErrorKind.VENDOR_UNAVAILABLE, ErrorKind.TIMEOUT)


@dataclass(frozen=True)
class CallerContext:
    """Identity of the caller, used for audit attribution only."""
    actor_id: str = "unknown"


@dataclass
class RequestContext:
    """Per-call context used to correlate logs and audit events."""
    verb: Verb
    resource_type: str
    resource_id: Optional[str] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.monotonic)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def method(self) -> str:
        return self.verb.method

    @property
    def path(self) -> str:
        if self.resource_id:
            return f"{self.resource_type}/{self.resource_id}"
        return self.resource_type

    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.started_at) * 1000, 2)


class OperationResult(BaseModel):
    """Outcome of a connector operation."""
    success: bool
    request_id: str
    payload: Optional[Any] = None
    classification: Optional[ErrorKind] = None
    http_status: Optional[int] = None
    vendor_message: Optional[str] = None

    @classmethod
    def ok(
        cls,
        request_id: str,
        payload: Any = None,
        http_status: Optional[int] = None,
    ) -> "OperationResult":
        return cls(
            success=True,
            request_id=request_id,
            payload=payload,
            http_status=http_status,
        )

    @classmethod
    def failure(
        cls,
        request_id: str,
        classification: ErrorKind,
        http_status: Optional[int] = None,
        vendor_message: Optional[str] = None,
    ) -> "OperationResult":
        return cls(
            success=False,
            request_id=request_id,
            classification=classification,
            http_status=http_status,
            vendor_message=vendor_message,
        )


# =============================================================================
# Bundle Helpers
# =============================================================================

def bundle_resources(bundle: Optional[dict]) -> List[dict]:
    """
    Extract resources from a FHIR Bundle in vendor order.

    Returns an empty list for anything that is not a Bundle.
    """
    if not isinstance(bundle, dict) or bundle.get("resourceType") != "Bundle":
        return []
    return [
        entry["resource"]
        for entry in bundle.get("entry") or []
        if isinstance(entry, dict) and "resource" in entry
    ]


def bundle_total(bundle: Optional[dict]) -> int:
    """Total match count reported by the vendor, or the entry count."""
    if not isinstance(bundle, dict):
        return 0
    total = bundle.get("total")
    if isinstance(total, int):
        return total
    return len(bundle_resources(bundle))
