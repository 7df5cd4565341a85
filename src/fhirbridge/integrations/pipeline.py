"""
Request Pipeline

Wraps every outbound FHIR call:
- Pre-flight token check and renewal
- Request id stamping
- Body-free transition logging
- Response classification into ErrorKind
- At most one forced refresh and resend after a 401
- Exactly one audit event per logical operation
"""

from enum import Enum
from typing import Any, Dict, Mapping, Optional
import asyncio

import httpx
import structlog

from fhirbridge.integrations.errors import AuthError
from fhirbridge.integrations.models import (
    CallerContext,
    ConnectorConfig,
    ErrorKind,
    OperationResult,
    RequestContext,
    Verb,
)
from fhirbridge.integrations.tokens import TokenManager
from fhirbridge.security.audit import AuditTrail

logger = structlog.get_logger(__name__)


FHIR_JSON = "application/fhir+json"


class PipelineState(str, Enum):
    """States of one outbound call."""
    PREPARING = "PREPARING"
    AUTHENTICATING = "AUTHENTICATING"
    SENDING = "SENDING"
    RETRYING = "RETRYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


def classify_status(status_code: int) -> Optional[ErrorKind]:
    """Map an HTTP status to an ErrorKind; None means success."""
    if 200 <= status_code < 300:
        return None
    if status_code == 401:
        return ErrorKind.AUTH_FAILURE
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if 400 <= status_code < 500:
        return ErrorKind.VENDOR_REJECTED
    return ErrorKind.VENDOR_UNAVAILABLE


def outcome_issue_code(response: httpx.Response) -> Optional[str]:
    """First OperationOutcome issue code, if the body is an OperationOutcome."""
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("resourceType") != "OperationOutcome":
        return None
    for issue in data.get("issue") or []:
        if isinstance(issue, dict) and isinstance(issue.get("code"), str):
            return issue["code"]
    return None


class RequestPipeline:
    """
    Per-connector request pipeline.

    States per call: PREPARING -> AUTHENTICATING (when the token is
    expired) -> SENDING -> SUCCEEDED | FAILED, with a single
    RETRYING -> SENDING loop after a 401. execute() never raises for
    vendor failures; they come back as OperationResult failures.
    """

    MAX_AUTH_RETRIES = 1

    def __init__(
        self,
        http: httpx.AsyncClient,
        config: ConnectorConfig,
        tokens: TokenManager,
        audit: AuditTrail,
        default_headers: Optional[Mapping[str, str]] = None,
        operation_timeout: Optional[float] = 90.0,
    ):
        self._http = http
        self.config = config
        self.tokens = tokens
        self.audit = audit
        self.default_headers = dict(default_headers or {})
        self.operation_timeout = operation_timeout

    @property
    def vendor_id(self) -> str:
        return self.config.vendor_id

    async def execute(
        self,
        verb: Verb,
        resource_type: str,
        resource_id: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        caller: Optional[CallerContext] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> OperationResult:
        """
        Run one logical FHIR operation.

        Args:
            verb: FHIR interaction
            resource_type: FHIR resource type, e.g. "Patient"
            resource_id: Resource id for read/update/delete
            params: Search parameters
            body: Resource for create/update
            caller: Identity used for audit attribution only
            headers: Extra headers for this call

        Returns:
            OperationResult tagged with the request id. Unexpected errors
            are reported as VendorUnavailable; only cancellation propagates.
        """
        ctx = RequestContext(
            verb=verb,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        caller = caller or CallerContext()

        try:
            result = await asyncio.wait_for(
                self._run(ctx, params, body, headers),
                timeout=self.operation_timeout,
            )
        except asyncio.TimeoutError:
            self._log_state(ctx, PipelineState.FAILED, kind=ErrorKind.TIMEOUT.value)
            result = OperationResult.failure(
                ctx.request_id,
                ErrorKind.TIMEOUT,
                vendor_message=f"{self.vendor_id} operation timed out",
            )
        except Exception as exc:
            logger.exception(
                "Unexpected error in request pipeline",
                vendor=self.vendor_id,
                request_id=ctx.request_id,
                error_type=type(exc).__name__,
            )
            self._log_state(
                ctx,
                PipelineState.FAILED,
                kind=ErrorKind.VENDOR_UNAVAILABLE.value,
                error_type=type(exc).__name__,
            )
            result = OperationResult.failure(
                ctx.request_id,
                ErrorKind.VENDOR_UNAVAILABLE,
                vendor_message=f"{self.vendor_id} request failed: {type(exc).__name__}",
            )

        await self.audit.emit(ctx, caller, result, params)
        return result

    async def _run(
        self,
        ctx: RequestContext,
        params: Optional[Mapping[str, Any]],
        body: Optional[Dict[str, Any]],
        headers: Optional[Mapping[str, str]],
    ) -> OperationResult:
        self._log_state(ctx, PipelineState.PREPARING)

        if self.tokens.is_expired():
            self._log_state(ctx, PipelineState.AUTHENTICATING)
        try:
            token = await self.tokens.get_token()
        except AuthError as exc:
            return self._auth_failed(ctx, exc)

        retries = 0
        while True:
            attempt = retries + 1
            self._log_state(ctx, PipelineState.SENDING, attempt=attempt)

            try:
                response = await self._send(ctx, token, params, body, headers)
            except httpx.HTTPError as exc:
                # Transport failures and per-call timeouts are never auth failures
                self._log_state(
                    ctx,
                    PipelineState.FAILED,
                    attempt=attempt,
                    kind=ErrorKind.VENDOR_UNAVAILABLE.value,
                    error_type=type(exc).__name__,
                )
                return OperationResult.failure(
                    ctx.request_id,
                    ErrorKind.VENDOR_UNAVAILABLE,
                    vendor_message=f"{self.vendor_id} unreachable: {type(exc).__name__}",
                )

            if response.status_code == 401 and retries < self.MAX_AUTH_RETRIES:
                retries += 1
                self._log_state(ctx, PipelineState.RETRYING, status=401, attempt=attempt)
                try:
                    token = await self.tokens.force_refresh(token)
                except AuthError as exc:
                    return self._auth_failed(ctx, exc)
                continue

            return self._classify(ctx, response, attempt)

    async def _send(
        self,
        ctx: RequestContext,
        token: str,
        params: Optional[Mapping[str, Any]],
        body: Optional[Dict[str, Any]],
        headers: Optional[Mapping[str, str]],
    ) -> httpx.Response:
        request_headers = {
            **self.default_headers,
            **(headers or {}),
            "Authorization": f"Bearer {token}",
            "X-Request-Id": ctx.request_id,
        }
        if body is not None:
            request_headers.setdefault("Content-Type", FHIR_JSON)

        return await self._http.request(
            ctx.method,
            f"{self.config.base_url}/{ctx.path}",
            params=dict(params) if params else None,
            json=body,
            headers=request_headers,
        )

    def _classify(
        self,
        ctx: RequestContext,
        response: httpx.Response,
        attempt: int,
    ) -> OperationResult:
        status = response.status_code
        kind = classify_status(status)

        if kind is None:
            payload = None
            if ctx.verb is not Verb.DELETE and response.content:
                try:
                    payload = response.json()
                except ValueError:
                    self._log_state(
                        ctx,
                        PipelineState.FAILED,
                        status=status,
                        attempt=attempt,
                        kind=ErrorKind.VENDOR_UNAVAILABLE.value,
                    )
                    return OperationResult.failure(
                        ctx.request_id,
                        ErrorKind.VENDOR_UNAVAILABLE,
                        http_status=status,
                        vendor_message=f"{self.vendor_id} returned an unreadable response",
                    )

            self._log_state(ctx, PipelineState.SUCCEEDED, status=status, attempt=attempt)
            return OperationResult.ok(ctx.request_id, payload, http_status=status)

        message = f"{self.vendor_id} returned HTTP {status}"
        code = outcome_issue_code(response)
        if code:
            message = f"{message} ({code})"

        self._log_state(
            ctx,
            PipelineState.FAILED,
            status=status,
            attempt=attempt,
            kind=kind.value,
        )
        return OperationResult.failure(
            ctx.request_id,
            kind,
            http_status=status,
            vendor_message=message,
        )

    def _auth_failed(self, ctx: RequestContext, exc: AuthError) -> OperationResult:
        self._log_state(
            ctx,
            PipelineState.FAILED,
            status=exc.status,
            kind=exc.kind.value,
        )
        return OperationResult.failure(
            ctx.request_id,
            exc.kind,
            http_status=exc.status,
            vendor_message=exc.message,
        )

    def _log_state(self, ctx: RequestContext, state: PipelineState, **fields: Any) -> None:
        log = logger.info if state in (PipelineState.SUCCEEDED, PipelineState.FAILED) else logger.debug
        log(
            "fhir_request",
            vendor=self.vendor_id,
            request_id=ctx.request_id,
            method=ctx.method,
            resource_type=ctx.resource_type,
            state=state.value,
            duration_ms=ctx.elapsed_ms(),
            **{k: v for k, v in fields.items() if v is not None},
        )
