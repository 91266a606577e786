"""Patient Document Validation.

Shape checks applied to submitted documents before they reach the ledger.
This is not terminology validation: only the elements the store indexes or
the server relies on are checked, and unknown FHIR elements pass through
untouched.

Security Impact:
    - Malformed documents are rejected before any write
    - The reserved deletion marker cannot be forged by a client
    - Server-managed ``id``/``meta`` are stripped so clients cannot spoof versions

Architecture:
    - Implements ResourceValidator (Hexagonal Architecture)
    - Type safety enforced at runtime via Pydantic V2
"""

import logging
import re
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, ValidationError as PydanticValidationError

from fhir_vault.domain.enums import AdministrativeGender
from fhir_vault.domain.models import DELETION_MARKER, PATIENT, strip_server_managed
from fhir_vault.domain.ports import InvalidResource, ResourceValidator

logger = logging.getLogger(__name__)

_FULL_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class HumanName(BaseModel):
    """FHIR HumanName (the parts the store reads)."""

    model_config = ConfigDict(extra="allow")

    use: Optional[str] = None
    text: Optional[str] = None
    family: Optional[str] = None
    given: list[str] = Field(default_factory=list)
    prefix: list[str] = Field(default_factory=list)
    suffix: list[str] = Field(default_factory=list)


class PatientDocument(BaseModel):
    """Shape of a Patient document as accepted by the store.

    Parameters:
        resourceType: Must be ``Patient``
        active: Whether the record is in active use
        name: Human names; searched by ``name`` and sorted by the first family
        gender: FHIR AdministrativeGender code
        birthDate: Full calendar date, not in the future
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    resourceType: str
    active: Optional[bool] = None
    name: list[HumanName] = Field(default_factory=list)
    gender: Optional[AdministrativeGender] = None
    birthDate: Optional[date] = None

    @field_validator("resourceType")
    @classmethod
    def validate_resource_type(cls, v: str) -> str:
        if v != PATIENT:
            raise ValueError(f"resourceType must be '{PATIENT}', got '{v}'")
        return v

    @field_validator("birthDate", mode="before")
    @classmethod
    def validate_birth_date(cls, v) -> Optional[date]:
        """Require a full ``YYYY-MM-DD`` date that is not in the future.

        Raises:
            ValueError: If the value is not a string date or lies in the future
        """
        if v is None:
            return v
        if not isinstance(v, str):
            raise ValueError("birthDate must be a string in YYYY-MM-DD format")
        try:
            parsed = date.fromisoformat(v)
        except ValueError:
            raise ValueError(f"birthDate must be a valid YYYY-MM-DD date, got '{v}'")
        if not _FULL_DATE.match(v):
            raise ValueError(f"birthDate must be a valid YYYY-MM-DD date, got '{v}'")
        if parsed > date.today():
            raise ValueError(f"birthDate cannot be in the future: {v}")
        return parsed


def _format_location(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "(root)"


class PatientValidator(ResourceValidator):
    """ResourceValidator for Patient documents.

    Example Usage:
        ```python
        validator = PatientValidator()
        payload = validator.validate("Patient", {"resourceType": "Patient", "gender": "male"})
        ```
    """

    def validate(
        self,
        resource_type: str,
        document: dict[str, Any],
        resource_id: Optional[str] = None
    ) -> dict[str, Any]:
        if resource_type != PATIENT:
            raise InvalidResource(
                f"Unsupported resource type: {resource_type}",
                resource_id=resource_id
            )
        if not isinstance(document, dict):
            raise InvalidResource("Resource body must be a JSON object", resource_id=resource_id)

        issues: list[str] = []

        if DELETION_MARKER in document:
            issues.append(f"'{DELETION_MARKER}' is a reserved element")

        body_id = document.get("id")
        if resource_id is not None and body_id is not None and body_id != resource_id:
            issues.append(f"Resource id '{body_id}' does not match target id '{resource_id}'")

        try:
            PatientDocument.model_validate(document)
        except PydanticValidationError as e:
            for error in e.errors():
                issues.append(f"{_format_location(error['loc'])}: {error['msg']}")

        if issues:
            logger.warning(
                f"Rejected {resource_type} document for id={resource_id}: {len(issues)} issue(s)"
            )
            raise InvalidResource(
                "; ".join(issues),
                resource_id=resource_id,
                issues=issues
            )

        # Stored as submitted (minus server-owned elements); pydantic only checked it.
        return strip_server_managed(document)
