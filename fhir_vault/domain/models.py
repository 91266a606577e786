"""Versioned Resource Models.

This module defines the two record shapes the Version Ledger stores: the
current-state ``Resource`` row and the immutable ``HistoryEntry`` snapshot.

Security Impact:
    - Documents may contain PHI; models never log their payloads
    - Models are frozen so a returned record cannot be mutated in place
      and written back behind the ledger's back

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Storage adapters build these from rows; engines and transport read them
    - Follows Hexagonal Architecture: Domain Core is isolated from Adapters
"""

import copy
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# Resource type served by this deployment.
PATIENT = "Patient"

# Top-level key carried by the document of a deletion version.
DELETION_MARKER = "deleted"

# Elements owned by the server, never stored as part of a document.
SERVER_MANAGED_ELEMENTS = ("id", "meta")


def _format_instant(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class Resource(BaseModel):
    """Current state of one versioned resource.

    Parameters:
        id: Opaque unique identifier, never reused
        resource_type: Resource type tag (``Patient``)
        version: Current version number (>= 1)
        document: Stored payload as of ``version``
        created_at: When version 1 was written
        updated_at: When the current version was written
        deleted_at: Set once the resource is soft-deleted
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Opaque resource identifier")
    resource_type: str = Field(..., description="Resource type tag")
    version: int = Field(..., ge=1, description="Current version number")
    document: dict[str, Any] = Field(..., description="Stored document payload")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Timestamp of the current version")
    deleted_at: Optional[datetime] = Field(None, description="Soft-delete timestamp")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def version_token(self) -> str:
        """Weak ETag for the current version, e.g. ``W/"3"``."""
        return f'W/"{self.version}"'

    def to_fhir(self) -> dict[str, Any]:
        """Render the document the way the server returns it.

        Adds ``resourceType``, ``id`` and ``meta`` (``versionId`` and
        ``lastUpdated``) to a copy of the stored payload.
        """
        return render_fhir(self.resource_type, self.id, self.version, self.updated_at, self.document)


class HistoryEntry(BaseModel):
    """Immutable snapshot of a resource at one version.

    Parameters:
        resource_id: Identifier of the resource this entry belongs to
        resource_type: Resource type tag
        version: Version number this snapshot records
        document: Full payload as it existed at ``version``
        created_at: When this version was written
    """

    model_config = ConfigDict(frozen=True)

    resource_id: str = Field(..., min_length=1)
    resource_type: str
    version: int = Field(..., ge=1)
    document: dict[str, Any]
    created_at: datetime

    @property
    def is_deletion(self) -> bool:
        """True when this version records a soft delete."""
        return self.document.get(DELETION_MARKER) is True

    def to_fhir(self) -> dict[str, Any]:
        return render_fhir(self.resource_type, self.resource_id, self.version, self.created_at, self.document)


class SearchResult(BaseModel):
    """One page of matches plus the total ignoring pagination.

    ``items`` holds either ``Resource`` (searches) or ``HistoryEntry``
    (history listings).
    """

    model_config = ConfigDict(frozen=True)

    items: list[Any] = Field(default_factory=list, description="Matches in result order")
    total: int = Field(..., ge=0, description="Number of matches ignoring pagination")
    offset: int = Field(0, ge=0, description="Offset of the first item")
    count: int = Field(..., ge=0, description="Requested page size")

    @property
    def has_next(self) -> bool:
        return self.count > 0 and self.offset + self.count < self.total

    @property
    def has_previous(self) -> bool:
        return self.count > 0 and self.offset > 0 and self.total > 0

    @property
    def next_offset(self) -> Optional[int]:
        return self.offset + self.count if self.has_next else None

    @property
    def previous_offset(self) -> Optional[int]:
        if not self.has_previous:
            return None
        return max(0, min(self.offset, self.total) - self.count)


def render_fhir(
    resource_type: str,
    resource_id: str,
    version: int,
    last_updated: datetime,
    document: dict[str, Any],
) -> dict[str, Any]:
    """Build the outward FHIR representation of a stored document."""
    rendered = copy.deepcopy(document)
    rendered["resourceType"] = resource_type
    rendered["id"] = resource_id
    rendered["meta"] = {
        "versionId": str(version),
        "lastUpdated": _format_instant(last_updated),
    }
    return rendered


def strip_server_managed(document: dict[str, Any]) -> dict[str, Any]:
    """Return a deep copy of ``document`` without server-owned elements."""
    return {
        key: copy.deepcopy(value)
        for key, value in document.items()
        if key not in SERVER_MANAGED_ELEMENTS
    }


def mark_deleted(document: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``document`` tagged with the deletion marker."""
    tagged = copy.deepcopy(document)
    tagged[DELETION_MARKER] = True
    return tagged
