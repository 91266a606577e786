"""Health check endpoint."""

import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from fhir_vault.api.dependencies import LedgerDep
from fhir_vault.api.models import DatabaseHealth, HealthResponse
from fhir_vault.infrastructure.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check(ledger: LedgerDep) -> JSONResponse:
    """Check that the ledger backend is reachable.

    Returns 200 when the backend answers and 503 otherwise. Used by
    monitoring tools and load balancers; no stored data is exposed.
    """
    start_time = time.time()
    ping = ledger.ping()
    response_time = round((time.time() - start_time) * 1000, 2)

    if ping.is_success():
        health = HealthResponse(
            status="healthy",
            version=settings.app_version,
            database=DatabaseHealth(
                status="connected",
                type=settings.db_config.db_type,
                response_time_ms=response_time
            ),
        )
        status_code = 200
    else:
        logger.warning(f"Health check failed: {ping.error}")
        health = HealthResponse(
            status="unhealthy",
            version=settings.app_version,
            database=DatabaseHealth(status="disconnected", type=settings.db_config.db_type),
            reason=ping.error,
        )
        status_code = 503

    return JSONResponse(status_code=status_code, content=health.model_dump(mode="json", exclude_none=True))
