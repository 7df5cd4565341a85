"""
FHIRBridge API

FastAPI application exposing the EHR connector registry.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fhirbridge import __version__
from fhirbridge.api.routes import integrations_router
from fhirbridge.config import get_settings
from fhirbridge.integrations.registry import ConnectorRegistry, build_registry
from fhirbridge.observability.logging import configure_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the connector registry at startup and close it at shutdown."""
    settings = get_settings()
    configure_logging(settings.app.log_level, json=settings.app.log_json)

    if app.state.registry is None:
        app.state.registry = build_registry(settings)

    logger.info(
        "Starting FHIRBridge API",
        env=settings.app.env,
        vendors=app.state.registry.vendors(),
    )

    yield

    logger.info("Shutting down FHIRBridge API")
    await app.state.registry.aclose()


def create_app(registry: Optional[ConnectorRegistry] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        registry: Pre-built registry; built from settings at startup if omitted
    """
    app = FastAPI(
        title="FHIRBridge API",
        description="Multi-vendor EHR FHIR integration",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        registry = request.app.state.registry
        return {
            "status": "healthy",
            "version": __version__,
            "vendors": registry.vendors() if registry is not None else [],
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    app.include_router(integrations_router)
    return app


app = create_app()
