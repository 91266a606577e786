"""Main FastAPI application for FHIR-Vault.

Sets up the FHIR REST API with its routes, middleware, error handlers and
configuration.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fhir_vault import __version__
from fhir_vault.api.dependencies import get_ledger
from fhir_vault.api.errors import register_exception_handlers
from fhir_vault.api.middleware import setup_middleware
from fhir_vault.api.routes import health, metadata, patient
from fhir_vault.infrastructure.logging_config import setup_logging
from fhir_vault.infrastructure.settings import settings

setup_logging(use_json=settings.json_logs, log_level=settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    logger.info("FHIR-Vault API starting up...")
    logger.info(f"Ledger: {settings.db_config.describe()}")
    logger.info(f"Logging level: {settings.log_level}")
    yield
    logger.info("FHIR-Vault API shutting down...")
    if get_ledger.cache_info().currsize:
        get_ledger().close()
        get_ledger.cache_clear()


def create_app() -> FastAPI:
    """Build the FastAPI application.

    Returns:
        FastAPI: Application with routes, middleware and error handlers installed
    """
    application = FastAPI(
        title="FHIR-Vault API",
        description="Versioned FHIR R4 Patient store",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag", "Location", "Last-Modified", "X-Process-Time"],
    )
    setup_middleware(application)
    register_exception_handlers(application)

    application.include_router(health.router)
    application.include_router(metadata.router)
    application.include_router(patient.router)

    @application.get("/")
    def root():
        """Root endpoint."""
        return {
            "message": "FHIR-Vault API",
            "version": __version__,
            "docs": "/docs",
            "fhir": "/fhir/Patient",
            "health": "/health"
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "fhir_vault.api.main:app",
        host=settings.bind_host,
        port=settings.bind_port,
        log_level="info"
    )
