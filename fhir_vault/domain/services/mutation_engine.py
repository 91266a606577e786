"""Mutation Engine.

Create, update and delete as resource-lifecycle transitions over the
Version Ledger, adding the not-found and conflict semantics callers map to
transport outcomes.

Security Impact:
    - Documents are validated before any critical section is entered
    - Deleted resources cannot be updated back to life
    - Payloads are never logged, only ids and versions

Architecture:
    - Pure domain service; depends on LedgerPort and ResourceValidator only
    - The read-check-append sequence of update/delete runs inside the
      ledger's per-id mutation lock, so unpinned writers build on the latest
      version instead of failing spuriously
    - No internal retries: conflict resolution is the caller's job
"""

import logging
import uuid
from typing import Any, Callable, Optional

from fhir_vault.domain.models import PATIENT, Resource, mark_deleted
from fhir_vault.domain.ports import LedgerPort, NotFound, ResourceValidator, VersionConflict
from fhir_vault.domain.utils import utcnow

logger = logging.getLogger(__name__)


def _new_resource_id() -> str:
    return str(uuid.uuid4())


class MutationEngine:
    """Lifecycle operations for one resource type.

    Parameters:
        ledger: Version Ledger holding current state and history
        validator: Shape-check collaborator
        resource_type: Type this engine writes (``Patient``)
        id_factory: Generates fresh resource ids (uuid4 by default)

    Example Usage:
        ```python
        engine = MutationEngine(ledger, PatientValidator())
        patient = engine.create({"resourceType": "Patient", "gender": "male"})
        patient = engine.update(patient.id, {...}, if_match_version=patient.version)
        engine.delete(patient.id)
        ```
    """

    def __init__(
        self,
        ledger: LedgerPort,
        validator: ResourceValidator,
        resource_type: str = PATIENT,
        id_factory: Callable[[], str] = _new_resource_id
    ):
        self.ledger = ledger
        self.validator = validator
        self.resource_type = resource_type
        self._id_factory = id_factory

    def create(self, document: dict[str, Any]) -> Resource:
        """Validate and store a new resource at version 1.

        Returns:
            Resource: The created resource

        Raises:
            InvalidResource: If the document fails validation (nothing written)
            AlreadyExists: If the generated id collides with an existing one
        """
        payload = self.validator.validate(self.resource_type, document)
        resource_id = self._id_factory()

        resource = self.ledger.put(resource_id, self.resource_type, payload)
        logger.info(f"Created {self.resource_type}/{resource.id} at version {resource.version}")
        return resource

    def update(
        self,
        resource_id: str,
        document: dict[str, Any],
        if_match_version: Optional[int] = None
    ) -> Resource:
        """Replace the document of a live resource with a new version.

        Parameters:
            resource_id: Target resource
            document: Full replacement document
            if_match_version: Version the caller last saw; when given, the
                              update only applies if it is still current

        Raises:
            InvalidResource: If the document fails validation (nothing written)
            NotFound: If the resource does not exist or is soft-deleted
            VersionConflict: If ``if_match_version`` is stale
        """
        payload = self.validator.validate(self.resource_type, document, resource_id=resource_id)

        with self.ledger.mutation_lock(resource_id):
            current = self._live_state(resource_id)

            if if_match_version is not None and if_match_version != current.version:
                logger.warning(
                    f"Version conflict on {self.resource_type}/{resource_id}: "
                    f"expected {if_match_version}, current {current.version}"
                )
                raise VersionConflict(
                    f"{self.resource_type}/{resource_id} is at version {current.version}, "
                    f"not {if_match_version}",
                    resource_id=resource_id,
                    expected_version=if_match_version,
                    current_version=current.version
                )

            resource = self.ledger.append_version(resource_id, payload, expected_version=current.version)

        logger.info(f"Updated {self.resource_type}/{resource_id} to version {resource.version}")
        return resource

    def delete(self, resource_id: str) -> int:
        """Soft-delete a live resource.

        Appends a version whose document is the prior payload carrying the
        deletion marker, with ``deleted_at`` set to the operation time.
        Deleting an already-deleted resource is ``NotFound``: deleted
        resources no longer exist for mutation purposes.

        Returns:
            int: The deletion version number

        Raises:
            NotFound: If the resource does not exist or is already deleted
        """
        with self.ledger.mutation_lock(resource_id):
            current = self._live_state(resource_id)
            resource = self.ledger.append_version(
                resource_id,
                mark_deleted(current.document),
                expected_version=current.version,
                deleted_at=utcnow()
            )

        logger.info(f"Deleted {self.resource_type}/{resource_id} at version {resource.version}")
        return resource.version

    def _live_state(self, resource_id: str) -> Resource:
        current = self.ledger.current_state(resource_id)
        if current.resource_type != self.resource_type:
            raise NotFound(f"{self.resource_type}/{resource_id} not found", resource_id=resource_id)
        if current.is_deleted:
            logger.warning(f"Rejected mutation of deleted {self.resource_type}/{resource_id}")
            raise NotFound(
                f"{self.resource_type}/{resource_id} has been deleted",
                resource_id=resource_id
            )
        return current
