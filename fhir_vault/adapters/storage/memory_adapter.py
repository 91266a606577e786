"""In-Memory Version Ledger.

Process-local LedgerPort implementation used for development, tests and
single-process deployments.

Architecture:
    - Implements LedgerPort (Hexagonal Architecture)
    - Each id maps to one immutable record holding the current row and its
      history tuple; a write builds a new record and installs it with a
      single dict assignment, so readers see the old or the new state and
      never a current row that disagrees with its history
    - Documents are deep-copied on the way in and out
"""

import copy
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from fhir_vault.domain.models import HistoryEntry, Resource
from fhir_vault.domain.ports import AlreadyExists, LedgerPort, NotFound, VersionConflict
from fhir_vault.domain.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _LedgerRecord:
    resource: Resource
    history: tuple[HistoryEntry, ...]


def _detached(resource: Resource) -> Resource:
    return resource.model_copy(update={"document": copy.deepcopy(resource.document)})


def _detached_entry(entry: HistoryEntry) -> HistoryEntry:
    return entry.model_copy(update={"document": copy.deepcopy(entry.document)})


class InMemoryLedger(LedgerPort):
    """LedgerPort backed by a dict of immutable records.

    Example Usage:
        ```python
        ledger = InMemoryLedger()
        ledger.put("p1", "Patient", {"gender": "male"})
        ledger.current_state("p1").version  # 1
        ```
    """

    def __init__(self):
        super().__init__()
        self._records: dict[str, _LedgerRecord] = {}
        # Guards structural changes of the dict against concurrent scans.
        self._index_lock = threading.Lock()

    def _record(self, resource_id: str) -> _LedgerRecord:
        record = self._records.get(resource_id)
        if record is None:
            raise NotFound(f"Resource {resource_id} not found", resource_id=resource_id)
        return record

    def put(self, resource_id: str, resource_type: str, document: dict[str, Any]) -> Resource:
        with self.mutation_lock(resource_id):
            if resource_id in self._records:
                raise AlreadyExists(f"Resource {resource_id} already exists", resource_id=resource_id)

            now = utcnow()
            payload = copy.deepcopy(document)
            resource = Resource(
                id=resource_id,
                resource_type=resource_type,
                version=1,
                document=payload,
                created_at=now,
                updated_at=now,
            )
            entry = HistoryEntry(
                resource_id=resource_id,
                resource_type=resource_type,
                version=1,
                document=copy.deepcopy(payload),
                created_at=now,
            )
            with self._index_lock:
                self._records[resource_id] = _LedgerRecord(resource, (entry,))

        logger.debug(f"Stored {resource_type}/{resource_id} at version 1")
        return _detached(resource)

    def current_state(self, resource_id: str) -> Resource:
        return _detached(self._record(resource_id).resource)

    def append_version(
        self,
        resource_id: str,
        new_document: dict[str, Any],
        expected_version: int,
        deleted_at: Optional[datetime] = None
    ) -> Resource:
        with self.mutation_lock(resource_id):
            record = self._record(resource_id)
            current = record.resource
            if current.version != expected_version:
                raise VersionConflict(
                    f"Resource {resource_id} is at version {current.version}, not {expected_version}",
                    resource_id=resource_id,
                    expected_version=expected_version,
                    current_version=current.version
                )

            now = deleted_at or utcnow()
            version = expected_version + 1
            payload = copy.deepcopy(new_document)
            resource = Resource(
                id=resource_id,
                resource_type=current.resource_type,
                version=version,
                document=payload,
                created_at=current.created_at,
                updated_at=now,
                deleted_at=deleted_at,
            )
            entry = HistoryEntry(
                resource_id=resource_id,
                resource_type=current.resource_type,
                version=version,
                document=copy.deepcopy(payload),
                created_at=now,
            )
            with self._index_lock:
                self._records[resource_id] = _LedgerRecord(resource, record.history + (entry,))

        return _detached(resource)

    def history_of(self, resource_id: str) -> list[HistoryEntry]:
        record = self._record(resource_id)
        return [_detached_entry(entry) for entry in reversed(record.history)]

    def version_of(self, resource_id: str, version: int) -> HistoryEntry:
        record = self._record(resource_id)
        if 1 <= version <= len(record.history):
            return _detached_entry(record.history[version - 1])
        raise NotFound(f"Resource {resource_id} has no version {version}", resource_id=resource_id)

    def scan(self, resource_type: str, include_deleted: bool = False) -> list[Resource]:
        with self._index_lock:
            records = list(self._records.values())
        return [
            _detached(record.resource)
            for record in records
            if record.resource.resource_type == resource_type
            and (include_deleted or not record.resource.is_deleted)
        ]
