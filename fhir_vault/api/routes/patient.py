"""FHIR Patient endpoints.

Create, read, vread, update, delete, search, history and ``$validate`` over
the Mutation and Query engines. Handlers are synchronous so FastAPI runs them
in its threadpool; the engines block on the ledger.

Security Impact:
    - Documents are validated before any write
    - Server-managed ``id``/``meta`` in request bodies are ignored
    - Error bodies never echo stored documents
"""

import logging
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Body, Header, Query, Request, Response

from fhir_vault.api.dependencies import MutationEngineDep, QueryEngineDep, ValidatorDep
from fhir_vault.api.etag import format_etag, format_last_modified, parse_if_match
from fhir_vault.api.responses import FHIRResponse
from fhir_vault.domain.bundle import Bundle, OperationOutcome
from fhir_vault.domain.models import PATIENT, Resource
from fhir_vault.domain.ports import ResourceDeleted
from fhir_vault.infrastructure.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"/fhir/{PATIENT}", tags=["patient"])

Document = Annotated[Any, Body(description="FHIR Patient resource")]


def type_url(request: Request) -> str:
    """Absolute URL of the Patient type endpoint, honouring ``FV_BASE_URL``."""
    base = settings.base_url or str(request.base_url)
    return f"{base.rstrip('/')}/fhir/{PATIENT}"


def _version_headers(resource: Resource) -> dict[str, str]:
    return {
        "ETag": format_etag(resource.version),
        "Last-Modified": format_last_modified(resource.updated_at),
    }


def _query_params(request: Request) -> dict[str, list[str]]:
    params: dict[str, list[str]] = {}
    for key, value in request.query_params.multi_items():
        params.setdefault(key, []).append(value)
    return params


@router.post("", status_code=201)
def create_patient(request: Request, document: Document, engine: MutationEngineDep) -> FHIRResponse:
    """Create a Patient at version 1.

    Returns 201 with ``Location`` and ``ETag`` headers and the stored resource.
    """
    resource = engine.create(document)
    headers = _version_headers(resource)
    headers["Location"] = f"{type_url(request)}/{resource.id}"
    return FHIRResponse(status_code=201, content=resource.to_fhir(), headers=headers)


@router.get("")
def search_patients(request: Request, engine: QueryEngineDep) -> FHIRResponse:
    """Search Patients; returns a ``searchset`` Bundle with paging links."""
    query = engine.parse(_query_params(request))
    result = engine.search(query)
    bundle = Bundle.searchset(result, type_url(request), query)
    return FHIRResponse(content=bundle.to_fhir())


@router.post("/$validate")
def validate_patient(document: Document, validator: ValidatorDep) -> FHIRResponse:
    """Validate a Patient without storing it.

    Returns 200 with an informational OperationOutcome; an invalid document
    yields 400 with one issue per problem.
    """
    validator.validate(PATIENT, document)
    return FHIRResponse(content=OperationOutcome.success("Validation successful").to_fhir())


@router.get("/{resource_id}")
def read_patient(resource_id: str, engine: QueryEngineDep) -> FHIRResponse:
    """Current version of a Patient; 404 if unknown, 410 if deleted."""
    resource = engine.read(resource_id)
    return FHIRResponse(content=resource.to_fhir(), headers=_version_headers(resource))


@router.put("/{resource_id}")
def update_patient(
    resource_id: str,
    document: Document,
    engine: MutationEngineDep,
    if_match: Annotated[Optional[str], Header(alias="If-Match")] = None,
) -> FHIRResponse:
    """Replace a Patient with a new version.

    An ``If-Match`` header pins the update to a version; a stale pin is 409.
    Updating an unknown or deleted Patient is 404.
    """
    resource = engine.update(resource_id, document, if_match_version=parse_if_match(if_match))
    return FHIRResponse(content=resource.to_fhir(), headers=_version_headers(resource))


@router.delete("/{resource_id}", status_code=204)
def delete_patient(resource_id: str, engine: MutationEngineDep) -> Response:
    """Soft-delete a Patient; 204 with the deletion version as ETag."""
    version = engine.delete(resource_id)
    return Response(status_code=204, headers={"ETag": format_etag(version)})


@router.get("/{resource_id}/_history")
def patient_history(
    request: Request,
    resource_id: str,
    engine: QueryEngineDep,
    count: Annotated[Optional[int], Query(alias="_count", ge=0)] = None,
    offset: Annotated[int, Query(alias="_offset", ge=0)] = 0,
) -> FHIRResponse:
    """Every version of a Patient, newest first, deletions included."""
    result = engine.history(resource_id, offset=offset, count=count)
    bundle = Bundle.history(result, type_url(request), resource_id)
    return FHIRResponse(content=bundle.to_fhir())


@router.get("/{resource_id}/_history/{version_id}")
def read_patient_version(resource_id: str, version_id: int, engine: QueryEngineDep) -> FHIRResponse:
    """One historical version; the deletion version itself answers 410."""
    entry = engine.vread(resource_id, version_id)
    if entry.is_deletion:
        raise ResourceDeleted(
            f"{PATIENT}/{resource_id} version {version_id} records a deletion",
            resource_id=resource_id,
            version=entry.version,
            deleted_at=entry.created_at
        )
    return FHIRResponse(
        content=entry.to_fhir(),
        headers={
            "ETag": format_etag(entry.version),
            "Last-Modified": format_last_modified(entry.created_at),
        },
    )
