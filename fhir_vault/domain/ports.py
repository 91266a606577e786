"""Domain Ports - Abstract Contracts for Versioned Storage.

This module defines the Port interfaces (abstract contracts) that storage and
validation adapters must implement, together with the error vocabulary every
layer shares. Following Hexagonal Architecture, the Domain Core defines what
it needs, not how it's provided.

Security Impact:
    - Only the ledger writes the current-state and history tables
    - History is append-only: no port operation removes or rewrites a version
    - Validation happens before any write, so malformed documents are never persisted

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (in-memory, DuckDB, PostgreSQL) implement LedgerPort
    - Engines depend on the ports only, never on a concrete adapter
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, Iterator, Optional, TypeVar, Union

from fhir_vault.domain.models import HistoryEntry, Resource
from fhir_vault.domain.utils import KeyedLock

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Used by adapter lifecycle operations (schema setup, health checks) whose
    callers want to report a failure rather than abort on it.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (StorageError, etc.)
        error_details: Additional error context

    Example:
        ```python
        result = ledger.initialize_schema()
        if not result.is_success():
            logger.error(result.error, extra={"extra_fields": result.error_details})
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result."""
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "StorageError")
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")
        if error_details is None and isinstance(error, ResourceStoreError):
            error_details = error.details

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class ResourceStoreError(Exception):
    """Base exception for all resource store errors.

    Every error is recoverable by the caller; none is fatal to the process.

    Attributes:
        resource_id: Identifier of the resource involved, if any
        details: Additional structured error context
    """

    def __init__(self, message: str, resource_id: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.resource_id = resource_id
        self.details = details or {}


class InvalidResource(ResourceStoreError):
    """Raised when a document fails shape validation. Nothing is persisted.

    Attributes:
        issues: One human-readable message per validation problem
    """

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        issues: Optional[list[str]] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message, resource_id=resource_id, details=details)
        self.issues = issues or [message]


class AlreadyExists(ResourceStoreError):
    """Raised when a new resource would reuse an existing (or deleted) id."""


class NotFound(ResourceStoreError):
    """Raised for unknown ids, and for soft-deleted ids under mutation semantics."""


class ResourceDeleted(NotFound):
    """Raised when reading a resource that exists but is soft-deleted.

    Attributes:
        version: The deletion version
        deleted_at: When the resource was deleted
    """

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        version: Optional[int] = None,
        deleted_at: Optional[datetime] = None
    ):
        super().__init__(message, resource_id=resource_id, details={"version": version})
        self.version = version
        self.deleted_at = deleted_at


class VersionConflict(ResourceStoreError):
    """Raised when an optimistic-concurrency check fails.

    Attributes:
        expected_version: Version the caller staked its write on
        current_version: Version actually stored
    """

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        current_version: Optional[int] = None
    ):
        super().__init__(
            message,
            resource_id=resource_id,
            details={"expected_version": expected_version, "current_version": current_version}
        )
        self.expected_version = expected_version
        self.current_version = current_version


class InvalidQuery(ResourceStoreError):
    """Raised for malformed filter, sort or pagination input.

    Attributes:
        parameter: The offending search parameter name
    """

    def __init__(self, message: str, parameter: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.parameter = parameter


class StorageError(ResourceStoreError):
    """Raised when the storage substrate fails (connection, SQL, I/O).

    Attributes:
        operation: Ledger operation that failed
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.operation = operation


# ============================================================================
# Ports
# ============================================================================

class ResourceValidator(ABC):
    """Abstract contract for the document shape-check collaborator.

    The Mutation Engine calls the validator before entering any critical
    section; a failing document never reaches the ledger.
    """

    @abstractmethod
    def validate(
        self,
        resource_type: str,
        document: dict[str, Any],
        resource_id: Optional[str] = None
    ) -> dict[str, Any]:
        """Validate a document and return the normalized payload to store.

        Parameters:
            resource_type: Expected resource type
            document: Submitted document
            resource_id: Target id for updates (None on create)

        Returns:
            dict: Normalized document (server-managed elements removed)

        Raises:
            InvalidResource: If the document does not conform to the resource shape
        """
        pass


class LedgerPort(ABC):
    """Abstract contract for the Version Ledger.

    The ledger is the single owner of writes to the current-state table and
    the append-only history table.

    Key Principles:
        - Versions per id are 1..v with no gaps and no duplicates
        - The current row always equals the newest history entry
        - ``put`` and ``append_version`` each commit both tables together or not at all
        - Nothing is ever physically removed

    Concurrency:
        ``mutation_lock(resource_id)`` is a reentrant per-id critical section.
        Implementations take it around their own check-and-increment, and the
        Mutation Engine takes it around read-check-append sequences, so
        mutations on one id serialize while different ids never contend.
        Reads never take it. Adapters shared between processes extend it
        (PostgreSQL adds an advisory lock).

    Example Usage:
        ```python
        ledger = InMemoryLedger()
        created = ledger.put("p1", "Patient", {"gender": "male"})
        updated = ledger.append_version("p1", {"gender": "female"}, expected_version=1)
        assert [e.version for e in ledger.history_of("p1")] == [2, 1]
        ```
    """

    def __init__(self):
        self._mutation_locks = KeyedLock()

    @contextmanager
    def mutation_lock(self, resource_id: str) -> Iterator[None]:
        """Hold the per-id mutation critical section."""
        with self._mutation_locks.hold(resource_id):
            yield

    @abstractmethod
    def put(self, resource_id: str, resource_type: str, document: dict[str, Any]) -> Resource:
        """Insert a brand-new resource at version 1 with its first history entry.

        Raises:
            AlreadyExists: If ``resource_id`` was ever used, deleted ids included
            StorageError: If the write fails (nothing is committed)
        """
        pass

    @abstractmethod
    def current_state(self, resource_id: str) -> Resource:
        """Return the current row, soft-deleted or not.

        Raises:
            NotFound: If the id has never existed
        """
        pass

    @abstractmethod
    def append_version(
        self,
        resource_id: str,
        new_document: dict[str, Any],
        expected_version: int,
        deleted_at: Optional[datetime] = None
    ) -> Resource:
        """Atomically write version ``expected_version + 1``.

        Reads the current version, compares it to ``expected_version``, then
        rewrites the current row and appends the matching history entry in
        one atomic unit. ``deleted_at`` marks the new version as a deletion
        and doubles as its timestamp.

        Raises:
            NotFound: If the id has never existed
            VersionConflict: If the stored version differs from ``expected_version``
            StorageError: If the write fails (nothing is committed)
        """
        pass

    @abstractmethod
    def history_of(self, resource_id: str) -> list[HistoryEntry]:
        """Return every version of a resource, newest first.

        Raises:
            NotFound: If the id has never existed
        """
        pass

    @abstractmethod
    def version_of(self, resource_id: str, version: int) -> HistoryEntry:
        """Return one historical version.

        Raises:
            NotFound: If the id or the version does not exist
        """
        pass

    @abstractmethod
    def scan(self, resource_type: str, include_deleted: bool = False) -> list[Resource]:
        """Return the current rows of one resource type.

        Soft-deleted rows are excluded unless ``include_deleted`` is set.
        Order is unspecified; the Query Engine imposes its own.
        """
        pass

    def initialize_schema(self) -> Result[None]:
        """Create tables and indexes (no-op for schemaless backends)."""
        return Result.success_result(None)

    def ping(self) -> Result[None]:
        """Check that the backend is reachable."""
        return Result.success_result(None)

    def close(self) -> None:
        """Release connections and other resources."""
        return None
