"""Mapping of store errors to HTTP responses.

Every error body is a FHIR OperationOutcome. Storage failures are logged
with their traceback but reported to clients without internal detail.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from fhir_vault.api.responses import FHIRResponse
from fhir_vault.domain.bundle import OperationOutcome
from fhir_vault.domain.enums import IssueType
from fhir_vault.domain.ports import (
    AlreadyExists,
    InvalidQuery,
    InvalidResource,
    NotFound,
    ResourceDeleted,
    ResourceStoreError,
    StorageError,
    VersionConflict,
)

logger = logging.getLogger(__name__)

# Most specific first: ResourceDeleted is a NotFound.
ERROR_STATUS: tuple[tuple[type, int, IssueType], ...] = (
    (ResourceDeleted, 410, IssueType.DELETED),
    (NotFound, 404, IssueType.NOT_FOUND),
    (VersionConflict, 409, IssueType.CONFLICT),
    (AlreadyExists, 409, IssueType.DUPLICATE),
    (InvalidResource, 400, IssueType.INVALID),
    (InvalidQuery, 400, IssueType.INVALID),
    (StorageError, 500, IssueType.EXCEPTION),
)


def status_for(error: ResourceStoreError) -> tuple[int, IssueType]:
    for error_type, status_code, issue_type in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code, issue_type
    return 500, IssueType.EXCEPTION


def outcome_for(error: ResourceStoreError) -> OperationOutcome:
    _, issue_type = status_for(error)
    if isinstance(error, InvalidResource):
        return OperationOutcome.from_issues(issue_type, error.issues)
    if isinstance(error, StorageError):
        return OperationOutcome.error(issue_type, "Storage failure; see server logs")
    return OperationOutcome.error(issue_type, str(error))


async def resource_store_error_handler(request: Request, exc: ResourceStoreError) -> FHIRResponse:
    status_code, _ = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {str(exc)}", exc_info=exc)
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {type(exc).__name__}: {str(exc)}")

    headers = {}
    if isinstance(exc, ResourceDeleted) and exc.version is not None:
        headers["ETag"] = f'W/"{exc.version}"'
    return FHIRResponse(status_code=status_code, content=outcome_for(exc).to_fhir(), headers=headers)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> FHIRResponse:
    messages = [
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', 'invalid')}"
        for error in exc.errors()
    ]
    logger.warning(f"{request.method} {request.url.path} rejected: {len(messages)} request error(s)")
    return FHIRResponse(
        status_code=400,
        content=OperationOutcome.from_issues(IssueType.STRUCTURE, messages or ["Malformed request"]).to_fhir(),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> FHIRResponse:
    logger.error(f"{request.method} {request.url.path} - Error: {str(exc)}", exc_info=exc)
    return FHIRResponse(
        status_code=500,
        content=OperationOutcome.error(IssueType.EXCEPTION, "An unexpected error occurred").to_fhir(),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ResourceStoreError, resource_store_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
