"""
FHIRBridge API Routes
"""

from fhirbridge.api.routes.integrations import router as integrations_router

__all__ = ["integrations_router"]
