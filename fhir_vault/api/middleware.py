"""Middleware configuration for the FHIR API."""

import logging
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with its status and timing.

    Adds an ``X-Process-Time`` header to each response. Bodies are never
    logged.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        client = request.client.host if request.client else "unknown"

        logger.info(f"{request.method} {request.url.path} - Client: {client}")

        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = f"{process_time:.3f}"

        log = logger.warning if response.status_code >= 400 else logger.info
        log(
            f"{request.method} {request.url.path} - "
            f"Status: {response.status_code} - "
            f"Time: {process_time:.3f}s"
        )
        return response


def setup_middleware(app) -> None:
    """Install the application middleware.

    Parameters:
        app: FastAPI application instance
    """
    app.add_middleware(LoggingMiddleware)
