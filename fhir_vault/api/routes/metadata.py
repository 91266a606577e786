"""CapabilityStatement endpoint."""

from fastapi import APIRouter

from fhir_vault.api.responses import FHIRResponse
from fhir_vault.domain.bundle import capability_statement
from fhir_vault.domain.models import PATIENT
from fhir_vault.infrastructure.settings import settings

router = APIRouter(tags=["metadata"])


@router.get("/metadata")
@router.get("/fhir/metadata", include_in_schema=False)
def metadata() -> FHIRResponse:
    """Describe the interactions and search parameters this server supports."""
    return FHIRResponse(content=capability_statement(settings.app_name, settings.app_version, PATIENT))
