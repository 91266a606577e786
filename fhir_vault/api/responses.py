"""FHIR JSON responses."""

from fastapi.responses import JSONResponse

FHIR_MEDIA_TYPE = "application/fhir+json"


class FHIRResponse(JSONResponse):
    media_type = FHIR_MEDIA_TYPE
