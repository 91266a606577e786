"""DuckDB Version Ledger.

This adapter implements the LedgerPort contract on DuckDB, an in-process
database, keeping the current-state table and the append-only history table
in one file (or in memory).

Security Impact:
    - Current row and history entry are committed in one transaction or not at all
    - History rows are only ever inserted, never updated or deleted
    - Documents are never logged

Architecture:
    - Implements LedgerPort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - One shared connection; every operation runs on its own cursor so
      concurrent threads never share a transaction
    - Optimistic concurrency as a compare-and-swap UPDATE on ``version``
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import duckdb

from fhir_vault.domain.models import HistoryEntry, Resource
from fhir_vault.domain.ports import (
    AlreadyExists,
    LedgerPort,
    NotFound,
    ResourceStoreError,
    Result,
    StorageError,
    VersionConflict,
)
from fhir_vault.domain.utils import utcnow
from fhir_vault.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

_RESOURCE_COLUMNS = "id, resource_type, version, data, created_at, updated_at, deleted_at"
_HISTORY_COLUMNS = "resource_id, resource_type, version, data, created_at"


def _to_db_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC, as stored in TIMESTAMP columns."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _row_to_resource(row: tuple) -> Resource:
    return Resource(
        id=row[0],
        resource_type=row[1],
        version=row[2],
        document=json.loads(row[3]),
        created_at=_from_db_timestamp(row[4]),
        updated_at=_from_db_timestamp(row[5]),
        deleted_at=_from_db_timestamp(row[6]),
    )


def _row_to_entry(row: tuple) -> HistoryEntry:
    return HistoryEntry(
        resource_id=row[0],
        resource_type=row[1],
        version=row[2],
        document=json.loads(row[3]),
        created_at=_from_db_timestamp(row[4]),
    )


class DuckDBLedger(LedgerPort):
    """DuckDB implementation of LedgerPort.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        from fhir_vault.infrastructure.config_manager import get_database_config

        ledger = DuckDBLedger(db_config=get_database_config())

        # Or directly
        ledger = DuckDBLedger(db_path="data/fhir.duckdb")

        result = ledger.initialize_schema()
        if result.is_success():
            ledger.put("p1", "Patient", {"gender": "male"})
        ```
    """

    def __init__(self, db_config: Optional[DatabaseConfig] = None, db_path: Optional[str] = None):
        """Initialize DuckDB ledger.

        Note:
            If both db_config and db_path are provided, db_config takes precedence.
            If neither is provided, defaults to an in-memory database. The
            connection is established lazily on first use.

        Raises:
            StorageError: If db_config is not a DuckDB config, or the database
                          directory does not exist
        """
        super().__init__()
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._connection_lock = threading.Lock()
        self._schema_lock = threading.Lock()
        self._initialized = False

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the shared DuckDB connection.

        Raises:
            StorageError: If the database cannot be opened
        """
        with self._connection_lock:
            if self._connection is None:
                try:
                    self._connection = duckdb.connect(self.db_path)
                    logger.info(f"Connected to DuckDB database: {self.db_path}")
                except duckdb.Error as e:
                    raise StorageError(
                        f"Failed to connect to DuckDB: {str(e)}",
                        operation="connect",
                        details={"db_path": self.db_path}
                    )
            return self._connection

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        if not self._initialized:
            init_result = self.initialize_schema()
            if not init_result.is_success():
                raise StorageError(init_result.error, operation="initialize_schema")
        return self._get_connection().cursor()

    def _storage_error(self, operation: str, error: Exception, resource_id: Optional[str] = None) -> StorageError:
        error_msg = f"DuckDB {operation} failed: {str(error)}"
        logger.error(error_msg, exc_info=True)
        return StorageError(error_msg, operation=operation, details={"resource_id": resource_id})

    def initialize_schema(self) -> Result[None]:
        """Create the current-state and history tables and their indexes.

        Returns:
            Result[None]: Success or failure result
        """
        with self._schema_lock:
            return self._create_schema()

    def _create_schema(self) -> Result[None]:
        try:
            conn = self._get_connection()

            conn.execute("""
                CREATE TABLE IF NOT EXISTS fhir_resources (
                    id VARCHAR PRIMARY KEY,
                    resource_type VARCHAR NOT NULL,
                    version INTEGER NOT NULL,
                    data VARCHAR NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    deleted_at TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS fhir_history (
                    resource_id VARCHAR NOT NULL,
                    resource_type VARCHAR NOT NULL,
                    version INTEGER NOT NULL,
                    data VARCHAR NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    UNIQUE (resource_id, version)
                )
            """)

            # Indexes only on columns that are never updated; DuckDB turns updates
            # of indexed columns into delete+insert.
            conn.execute("CREATE INDEX IF NOT EXISTS idx_fhir_resources_type ON fhir_resources(resource_type)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_fhir_history_resource ON fhir_history(resource_id, version)")

            self._initialized = True
            logger.info("DuckDB ledger schema initialized successfully")
            return Result.success_result(None)

        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    def ping(self) -> Result[None]:
        try:
            cursor = self._get_connection().cursor()
            try:
                cursor.execute("SELECT 1").fetchone()
            finally:
                cursor.close()
            return Result.success_result(None)
        except (duckdb.Error, StorageError) as e:
            return Result.failure_result(StorageError(f"DuckDB unreachable: {str(e)}", operation="ping"))

    def put(self, resource_id: str, resource_type: str, document: dict[str, Any]) -> Resource:
        now = utcnow()
        data = json.dumps(document)

        with self.mutation_lock(resource_id):
            cursor = self._cursor()
            try:
                cursor.begin()
                try:
                    existing = cursor.execute(
                        "SELECT 1 FROM fhir_resources WHERE id = ?", [resource_id]
                    ).fetchone()
                    if existing is not None:
                        raise AlreadyExists(f"Resource {resource_id} already exists", resource_id=resource_id)

                    cursor.execute(
                        f"INSERT INTO fhir_resources ({_RESOURCE_COLUMNS}) VALUES (?, ?, 1, ?, ?, ?, NULL)",
                        [resource_id, resource_type, data, _to_db_timestamp(now), _to_db_timestamp(now)]
                    )
                    cursor.execute(
                        f"INSERT INTO fhir_history ({_HISTORY_COLUMNS}) VALUES (?, ?, 1, ?, ?)",
                        [resource_id, resource_type, data, _to_db_timestamp(now)]
                    )
                    cursor.commit()
                except Exception:
                    cursor.rollback()
                    raise
            except duckdb.ConstraintException:
                raise AlreadyExists(f"Resource {resource_id} already exists", resource_id=resource_id)
            except ResourceStoreError:
                raise
            except duckdb.Error as e:
                raise self._storage_error("put", e, resource_id)
            finally:
                cursor.close()

        logger.debug(f"Stored {resource_type}/{resource_id} at version 1")
        return Resource(
            id=resource_id,
            resource_type=resource_type,
            version=1,
            document=json.loads(data),
            created_at=now,
            updated_at=now,
        )

    def current_state(self, resource_id: str) -> Resource:
        row = self._fetchone(
            "current_state",
            f"SELECT {_RESOURCE_COLUMNS} FROM fhir_resources WHERE id = ?",
            [resource_id],
            resource_id
        )
        if row is None:
            raise NotFound(f"Resource {resource_id} not found", resource_id=resource_id)
        return _row_to_resource(row)

    def append_version(
        self,
        resource_id: str,
        new_document: dict[str, Any],
        expected_version: int,
        deleted_at: Optional[datetime] = None
    ) -> Resource:
        now = deleted_at or utcnow()
        version = expected_version + 1
        data = json.dumps(new_document)

        with self.mutation_lock(resource_id):
            cursor = self._cursor()
            try:
                cursor.begin()
                try:
                    current = cursor.execute(
                        "SELECT version, resource_type, created_at FROM fhir_resources WHERE id = ?",
                        [resource_id]
                    ).fetchone()
                    if current is None:
                        raise NotFound(f"Resource {resource_id} not found", resource_id=resource_id)

                    swapped = cursor.execute(
                        """
                        UPDATE fhir_resources
                        SET version = ?, data = ?, updated_at = ?, deleted_at = ?
                        WHERE id = ? AND version = ?
                        RETURNING version
                        """,
                        [version, data, _to_db_timestamp(now), _to_db_timestamp(deleted_at),
                         resource_id, expected_version]
                    ).fetchone()
                    if swapped is None:
                        raise VersionConflict(
                            f"Resource {resource_id} is at version {current[0]}, not {expected_version}",
                            resource_id=resource_id,
                            expected_version=expected_version,
                            current_version=current[0]
                        )

                    cursor.execute(
                        f"INSERT INTO fhir_history ({_HISTORY_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
                        [resource_id, current[1], version, data, _to_db_timestamp(now)]
                    )
                    cursor.commit()
                except Exception:
                    cursor.rollback()
                    raise
            except ResourceStoreError:
                raise
            except duckdb.Error as e:
                raise self._storage_error("append_version", e, resource_id)
            finally:
                cursor.close()

        return Resource(
            id=resource_id,
            resource_type=current[1],
            version=version,
            document=json.loads(data),
            created_at=_from_db_timestamp(current[2]),
            updated_at=now,
            deleted_at=deleted_at,
        )

    def history_of(self, resource_id: str) -> list[HistoryEntry]:
        rows = self._fetchall(
            "history_of",
            f"SELECT {_HISTORY_COLUMNS} FROM fhir_history WHERE resource_id = ? ORDER BY version DESC",
            [resource_id],
            resource_id
        )
        if not rows:
            raise NotFound(f"Resource {resource_id} not found", resource_id=resource_id)
        return [_row_to_entry(row) for row in rows]

    def version_of(self, resource_id: str, version: int) -> HistoryEntry:
        row = self._fetchone(
            "version_of",
            f"SELECT {_HISTORY_COLUMNS} FROM fhir_history WHERE resource_id = ? AND version = ?",
            [resource_id, version],
            resource_id
        )
        if row is None:
            raise NotFound(f"Resource {resource_id} has no version {version}", resource_id=resource_id)
        return _row_to_entry(row)

    def scan(self, resource_type: str, include_deleted: bool = False) -> list[Resource]:
        query = f"SELECT {_RESOURCE_COLUMNS} FROM fhir_resources WHERE resource_type = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        return [_row_to_resource(row) for row in self._fetchall("scan", query, [resource_type])]

    def _fetchone(self, operation: str, query: str, params: list, resource_id: Optional[str] = None):
        cursor = self._cursor()
        try:
            return cursor.execute(query, params).fetchone()
        except duckdb.Error as e:
            raise self._storage_error(operation, e, resource_id)
        finally:
            cursor.close()

    def _fetchall(self, operation: str, query: str, params: list, resource_id: Optional[str] = None):
        cursor = self._cursor()
        try:
            return cursor.execute(query, params).fetchall()
        except duckdb.Error as e:
            raise self._storage_error(operation, e, resource_id)
        finally:
            cursor.close()

    def close(self) -> None:
        """Close the DuckDB connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                self._connection = None
                self._initialized = False
                logger.info("Closed DuckDB connection")
            except duckdb.Error as e:
                logger.warning(f"Error closing connection: {str(e)}")
