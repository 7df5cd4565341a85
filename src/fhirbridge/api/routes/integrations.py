"""
EHR Integration API Routes

Endpoints for:
- Configured vendor listing
- Capability statements
- Patient search and read
- Patient clinical data
- Resource create, update and delete
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
import structlog

from fhirbridge.integrations.connector import EHRConnector
from fhirbridge.integrations.epic import EpicConnector
from fhirbridge.integrations.errors import UnknownVendorError, VendorError
from fhirbridge.integrations.models import CallerContext, ErrorKind, OperationResult
from fhirbridge.integrations.registry import ConnectorRegistry

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])


ERROR_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VENDOR_REJECTED: 422,
    ErrorKind.AUTH_FAILURE: 502,
    ErrorKind.VENDOR_UNAVAILABLE: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.CONFIGURATION_ERROR: 500,
}


# =============================================================================
# Dependencies
# =============================================================================

def get_registry(request: Request) -> ConnectorRegistry:
    """Connector registry created in the application lifespan."""
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="EHR connectors not initialized")
    return registry


def get_caller(x_actor_id: Optional[str] = Header(default=None)) -> CallerContext:
    """Caller identity for audit attribution (set by upstream auth middleware)."""
    return CallerContext(actor_id=x_actor_id or "unknown")


def get_connector(
    vendor: str,
    registry: ConnectorRegistry = Depends(get_registry),
) -> EHRConnector:
    try:
        return registry.get(vendor)
    except UnknownVendorError as e:
        raise HTTPException(status_code=400, detail=str(e))


# =============================================================================
# Responses
# =============================================================================

def to_response(result: OperationResult, success_status: int = 200) -> JSONResponse:
    """Convert an OperationResult to an HTTP response."""
    if result.success:
        return JSONResponse(
            status_code=success_status,
            content={
                "success": True,
                "request_id": result.request_id,
                "data": result.payload,
            },
        )

    return JSONResponse(
        status_code=ERROR_STATUS.get(result.classification, 500),
        content={
            "success": False,
            "classification": result.classification.value if result.classification else None,
            "request_id": result.request_id,
            "message": result.vendor_message,
        },
    )


def search_params(request: Request) -> Dict[str, Any]:
    return dict(request.query_params)


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/vendors")
async def list_vendors(registry: ConnectorRegistry = Depends(get_registry)):
    """List configured EHR vendors."""
    return {"vendors": registry.vendors()}


@router.get("/{vendor}/metadata")
async def get_capability_statement(
    refresh: bool = False,
    connector: EHRConnector = Depends(get_connector),
):
    """Get the vendor CapabilityStatement."""
    try:
        statement = await connector.capability_statement(refresh=refresh)
    except VendorError as e:
        logger.warning(
            "Capability statement unavailable",
            vendor=connector.vendor_id,
            kind=e.kind.value,
            status=e.status,
        )
        return JSONResponse(
            status_code=ERROR_STATUS.get(e.kind, 500),
            content={
                "success": False,
                "classification": e.kind.value,
                "request_id": None,
                "message": e.message,
            },
        )
    return {"success": True, "data": statement}


@router.get("/{vendor}/Patient")
async def search_patients(
    request: Request,
    connector: EHRConnector = Depends(get_connector),
    caller: CallerContext = Depends(get_caller),
):
    """Search patients with FHIR search parameters."""
    params = search_params(request)
    mrn = params.pop("mrn", None)
    if mrn:
        result = await connector.find_patient_by_external_id(mrn, caller=caller)
    else:
        result = await connector.search("Patient", params, caller=caller)
    return to_response(result)


@router.get("/{vendor}/Patient/{patient_id}")
async def get_patient(
    patient_id: str,
    connector: EHRConnector = Depends(get_connector),
    caller: CallerContext = Depends(get_caller),
):
    """Read a patient."""
    if isinstance(connector, EpicConnector):
        result = await connector.get_patient(patient_id, caller=caller)
    else:
        result = await connector.read("Patient", patient_id, caller=caller)
    return to_response(result)


@router.get("/{vendor}/Patient/{patient_id}/{resource_type}")
async def get_patient_data(
    request: Request,
    patient_id: str,
    resource_type: str,
    connector: EHRConnector = Depends(get_connector),
    caller: CallerContext = Depends(get_caller),
):
    """Get a patient's resources of one type."""
    params = search_params(request)
    if isinstance(connector, EpicConnector):
        try:
            result = await connector.get_patient_data(
                patient_id, resource_type, params, caller=caller
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    else:
        result = await connector.search(
            resource_type, {**params, "patient": patient_id}, caller=caller
        )
    return to_response(result)


@router.post("/{vendor}/{resource_type}")
async def create_resource(
    resource_type: str,
    resource: Dict[str, Any] = Body(...),
    connector: EHRConnector = Depends(get_connector),
    caller: CallerContext = Depends(get_caller),
):
    """Create a resource."""
    result = await connector.create(resource_type, resource, caller=caller)
    return to_response(result, success_status=201)


@router.put("/{vendor}/{resource_type}/{resource_id}")
async def update_resource(
    resource_type: str,
    resource_id: str,
    resource: Dict[str, Any] = Body(...),
    connector: EHRConnector = Depends(get_connector),
    caller: CallerContext = Depends(get_caller),
):
    """Update a resource."""
    result = await connector.update(resource_type, resource_id, resource, caller=caller)
    return to_response(result)


@router.delete("/{vendor}/{resource_type}/{resource_id}")
async def delete_resource(
    resource_type: str,
    resource_id: str,
    connector: EHRConnector = Depends(get_connector),
    caller: CallerContext = Depends(get_caller),
):
    """Delete a resource."""
    result = await connector.delete(resource_type, resource_id, caller=caller)
    return to_response(result)
