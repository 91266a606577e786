"""PostgreSQL Version Ledger.

This adapter implements the LedgerPort contract on PostgreSQL, storing
documents as JSONB in the current-state table and the append-only history
table.

Security Impact:
    - Current row and history entry are committed in one transaction or not at all
    - History rows are only ever inserted, never updated or deleted
    - Connection credentials are never logged
    - SSL connections supported for secure network communication

Architecture:
    - Implements LedgerPort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - Connection pooling via psycopg2's ThreadedConnectionPool
    - ``mutation_lock`` holds a session-level ``pg_advisory_lock`` keyed on the
      resource id for the whole read-check-append sequence, so writers in
      other processes sharing the database serialize with this one
    - ``SELECT ... FOR UPDATE`` plus a compare-and-swap UPDATE on ``version``
      inside each append
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional

import psycopg2
from psycopg2 import pool
from psycopg2.extras import Json

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

_ADVISORY_LOCK = "SELECT pg_advisory_lock(hashtext(%s))"
_ADVISORY_UNLOCK = "SELECT pg_advisory_unlock(hashtext(%s))"

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS fhir_resources (
        id TEXT PRIMARY KEY,
        resource_type VARCHAR(64) NOT NULL,
        version INTEGER NOT NULL CHECK (version >= 1),
        data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fhir_history (
        id BIGSERIAL PRIMARY KEY,
        resource_id TEXT NOT NULL,
        resource_type VARCHAR(64) NOT NULL,
        version INTEGER NOT NULL,
        data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        UNIQUE (resource_id, version)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_fhir_resources_type ON fhir_resources(resource_type)",
    "CREATE INDEX IF NOT EXISTS idx_fhir_resources_live ON fhir_resources(resource_type) WHERE deleted_at IS NULL",
    "CREATE INDEX IF NOT EXISTS idx_fhir_history_resource ON fhir_history(resource_id)",
    "CREATE INDEX IF NOT EXISTS idx_fhir_history_version ON fhir_history(resource_id, version DESC)",
)


def _load(data: Any) -> dict[str, Any]:
    # psycopg2 decodes JSONB itself; plain JSON text shows up from some drivers/casts.
    if isinstance(data, (str, bytes)):
        return json.loads(data)
    return data


def _row_to_resource(row: tuple) -> Resource:
    return Resource(
        id=row[0],
        resource_type=row[1],
        version=row[2],
        document=_load(row[3]),
        created_at=row[4],
        updated_at=row[5],
        deleted_at=row[6],
    )


def _row_to_entry(row: tuple) -> HistoryEntry:
    return HistoryEntry(
        resource_id=row[0],
        resource_type=row[1],
        version=row[2],
        document=_load(row[3]),
        created_at=row[4],
    )


class PostgreSQLLedger(LedgerPort):
    """PostgreSQL implementation of LedgerPort.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        connection_string: Full PostgreSQL connection string
        pool_size: Connection pool size
        max_overflow: Maximum connection pool overflow

    Example Usage:
        ```python
        from fhir_vault.infrastructure.config_manager import get_database_config

        ledger = PostgreSQLLedger(db_config=get_database_config())
        result = ledger.initialize_schema()
        if result.is_success():
            ledger.put("p1", "Patient", {"gender": "male"})
        ledger.close()
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        connection_string: Optional[str] = None,
        pool_size: int = 5,
        max_overflow: int = 10
    ):
        """Initialize PostgreSQL ledger.

        Security Impact:
            - Connection credentials are validated but never logged
            - Connection pool is created lazily (on first operation)
            - SSL mode defaults to 'prefer'

        Note:
            Priority order: db_config > connection_string.

        Raises:
            StorageError: If db_config is not a PostgreSQL config, or neither a
                          connection string nor host and database are available
        """
        super().__init__()
        self._connection_pool: Optional[pool.ThreadedConnectionPool] = None
        self._pool_lock = threading.Lock()
        self._schema_initialized = False
        self._schema_lock = threading.Lock()
        self._advisory = threading.local()

        if db_config:
            if db_config.db_type != "postgresql":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match PostgreSQL adapter",
                    operation="__init__"
                )
            if db_config.connection_string:
                self.connection_params = {"dsn": db_config.connection_string.get_secret_value()}
            elif db_config.host and db_config.database:
                self.connection_params = {
                    "host": db_config.host,
                    "port": db_config.port or 5432,
                    "database": db_config.database,
                    "user": db_config.username,
                    "sslmode": db_config.ssl_mode or "prefer",
                }
                if db_config.password:
                    self.connection_params["password"] = db_config.password.get_secret_value()
            else:
                raise StorageError(
                    "PostgreSQL DatabaseConfig requires host and database",
                    operation="__init__"
                )
            self.pool_size = db_config.pool_size
            self.max_overflow = db_config.max_overflow
        elif connection_string:
            self.connection_params = {"dsn": connection_string}
            self.pool_size = pool_size
            self.max_overflow = max_overflow
        else:
            raise StorageError(
                "PostgreSQL ledger requires either db_config or connection_string",
                operation="__init__"
            )

    def _get_connection_pool(self) -> pool.ThreadedConnectionPool:
        """Get or create the PostgreSQL connection pool.

        Raises:
            StorageError: If the pool cannot be created
        """
        with self._pool_lock:
            if self._connection_pool is None:
                try:
                    self._connection_pool = pool.ThreadedConnectionPool(
                        minconn=1,
                        maxconn=self.pool_size + self.max_overflow,
                        **self.connection_params
                    )
                    logger.info("Created PostgreSQL connection pool")
                except psycopg2.Error as e:
                    raise StorageError(
                        f"Failed to create PostgreSQL connection pool: {str(e)}",
                        operation="connect",
                        details={"host": self.connection_params.get("host", "N/A")}
                    )
            return self._connection_pool

    def _get_connection(self):
        try:
            return self._get_connection_pool().getconn()
        except StorageError:
            raise
        except psycopg2.Error as e:
            raise StorageError(
                f"Failed to get connection from pool: {str(e)}",
                operation="get_connection"
            )

    def _return_connection(self, conn) -> None:
        try:
            self._get_connection_pool().putconn(conn)
        except (psycopg2.Error, StorageError) as e:
            logger.warning(f"Error returning connection to pool: {str(e)}")

    def _ensure_schema(self) -> None:
        if not self._schema_initialized:
            result = self.initialize_schema()
            if not result.is_success():
                raise StorageError(result.error, operation="initialize_schema")

    def _storage_error(self, operation: str, error: Exception, resource_id: Optional[str] = None) -> StorageError:
        error_msg = f"PostgreSQL {operation} failed: {str(error)}"
        logger.error(error_msg, exc_info=True)
        return StorageError(error_msg, operation=operation, details={"resource_id": resource_id})

    @contextmanager
    def mutation_lock(self, resource_id: str) -> Iterator[None]:
        """Hold the per-id critical section across processes.

        The in-process lock is taken first. The outermost holder on a thread
        then takes ``pg_advisory_lock(hashtext(resource_id))`` on a dedicated
        pooled connection and keeps it until the block exits; nested holders
        on the same thread reuse it.

        Raises:
            StorageError: If the advisory lock cannot be taken
        """
        with super().mutation_lock(resource_id):
            held = self._advisory_ids()
            if resource_id in held:
                yield
                return

            conn = self._take_advisory_lock(resource_id)
            held.add(resource_id)
            try:
                yield
            finally:
                held.discard(resource_id)
                self._release_advisory_lock(conn, resource_id)

    def _advisory_ids(self) -> set[str]:
        if not hasattr(self._advisory, "ids"):
            self._advisory.ids = set()
        return self._advisory.ids

    def _take_advisory_lock(self, resource_id: str):
        conn = self._get_connection()
        try:
            # Session-level lock; autocommit keeps the lock connection out of a transaction.
            conn.autocommit = True
            cursor = conn.cursor()
            cursor.execute(_ADVISORY_LOCK, (resource_id,))
            cursor.close()
            return conn
        except psycopg2.Error as e:
            conn.close()
            self._return_connection(conn)
            raise self._storage_error("mutation_lock", e, resource_id)

    def _release_advisory_lock(self, conn, resource_id: str) -> None:
        try:
            cursor = conn.cursor()
            cursor.execute(_ADVISORY_UNLOCK, (resource_id,))
            cursor.close()
            conn.autocommit = False
        except psycopg2.Error as e:
            # Closing the session drops any advisory lock it still holds.
            logger.warning(f"Failed to release advisory lock for {resource_id}: {str(e)}")
            conn.close()
        finally:
            self._return_connection(conn)

    def initialize_schema(self) -> Result[None]:
        """Create the current-state and history tables and their indexes.

        Schema initialization is cached per ledger instance; the cache is
        thread-safe (double-checked locking).

        Returns:
            Result[None]: Success or failure result
        """
        if self._schema_initialized:
            return Result.success_result(None)

        with self._schema_lock:
            if self._schema_initialized:
                return Result.success_result(None)

            conn = None
            try:
                conn = self._get_connection()
                cursor = conn.cursor()
                for statement in _SCHEMA_STATEMENTS:
                    cursor.execute(statement)
                conn.commit()
                cursor.close()

                self._schema_initialized = True
                logger.info("PostgreSQL ledger schema initialized successfully")
                return Result.success_result(None)

            except (psycopg2.Error, StorageError) as e:
                if conn:
                    conn.rollback()
                error_msg = f"Failed to initialize schema: {str(e)}"
                logger.error(error_msg, exc_info=True)
                return Result.failure_result(
                    StorageError(error_msg, operation="initialize_schema"),
                    error_type="StorageError"
                )
            finally:
                if conn:
                    self._return_connection(conn)

    def ping(self) -> Result[None]:
        conn = None
        try:
            conn = self._get_connection()
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            cursor.fetchone()
            cursor.close()
            conn.rollback()
            return Result.success_result(None)
        except (psycopg2.Error, StorageError) as e:
            return Result.failure_result(StorageError(f"PostgreSQL unreachable: {str(e)}", operation="ping"))
        finally:
            if conn:
                self._return_connection(conn)

    def put(self, resource_id: str, resource_type: str, document: dict[str, Any]) -> Resource:
        self._ensure_schema()
        now = utcnow()

        with self.mutation_lock(resource_id):
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                cursor.execute(
                    f"""
                    INSERT INTO fhir_resources ({_RESOURCE_COLUMNS})
                    VALUES (%s, %s, 1, %s, %s, %s, NULL)
                    ON CONFLICT (id) DO NOTHING
                    RETURNING id
                    """,
                    (resource_id, resource_type, Json(document), now, now)
                )
                if cursor.fetchone() is None:
                    raise AlreadyExists(f"Resource {resource_id} already exists", resource_id=resource_id)

                cursor.execute(
                    f"INSERT INTO fhir_history ({_HISTORY_COLUMNS}) VALUES (%s, %s, 1, %s, %s)",
                    (resource_id, resource_type, Json(document), now)
                )
                conn.commit()
                cursor.close()
            except ResourceStoreError:
                conn.rollback()
                raise
            except psycopg2.Error as e:
                conn.rollback()
                raise self._storage_error("put", e, resource_id)
            finally:
                self._return_connection(conn)

        logger.debug(f"Stored {resource_type}/{resource_id} at version 1")
        return Resource(
            id=resource_id,
            resource_type=resource_type,
            version=1,
            document=document,
            created_at=now,
            updated_at=now,
        )

    def current_state(self, resource_id: str) -> Resource:
        row = self._fetch(
            "current_state",
            f"SELECT {_RESOURCE_COLUMNS} FROM fhir_resources WHERE id = %s",
            (resource_id,),
            resource_id,
            one=True
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
        self._ensure_schema()
        now = deleted_at or utcnow()
        version = expected_version + 1

        with self.mutation_lock(resource_id):
            conn = self._get_connection()
            try:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT version, resource_type, created_at FROM fhir_resources WHERE id = %s FOR UPDATE",
                    (resource_id,)
                )
                current = cursor.fetchone()
                if current is None:
                    raise NotFound(f"Resource {resource_id} not found", resource_id=resource_id)

                cursor.execute(
                    """
                    UPDATE fhir_resources
                    SET version = %s, data = %s, updated_at = %s, deleted_at = %s
                    WHERE id = %s AND version = %s
                    RETURNING version
                    """,
                    (version, Json(new_document), now, deleted_at, resource_id, expected_version)
                )
                if cursor.fetchone() is None:
                    raise VersionConflict(
                        f"Resource {resource_id} is at version {current[0]}, not {expected_version}",
                        resource_id=resource_id,
                        expected_version=expected_version,
                        current_version=current[0]
                    )

                cursor.execute(
                    f"INSERT INTO fhir_history ({_HISTORY_COLUMNS}) VALUES (%s, %s, %s, %s, %s)",
                    (resource_id, current[1], version, Json(new_document), now)
                )
                conn.commit()
                cursor.close()
            except ResourceStoreError:
                conn.rollback()
                raise
            except psycopg2.Error as e:
                conn.rollback()
                raise self._storage_error("append_version", e, resource_id)
            finally:
                self._return_connection(conn)

        return Resource(
            id=resource_id,
            resource_type=current[1],
            version=version,
            document=new_document,
            created_at=current[2],
            updated_at=now,
            deleted_at=deleted_at,
        )

    def history_of(self, resource_id: str) -> list[HistoryEntry]:
        rows = self._fetch(
            "history_of",
            f"SELECT {_HISTORY_COLUMNS} FROM fhir_history WHERE resource_id = %s ORDER BY version DESC",
            (resource_id,),
            resource_id
        )
        if not rows:
            raise NotFound(f"Resource {resource_id} not found", resource_id=resource_id)
        return [_row_to_entry(row) for row in rows]

    def version_of(self, resource_id: str, version: int) -> HistoryEntry:
        row = self._fetch(
            "version_of",
            f"SELECT {_HISTORY_COLUMNS} FROM fhir_history WHERE resource_id = %s AND version = %s",
            (resource_id, version),
            resource_id,
            one=True
        )
        if row is None:
            raise NotFound(f"Resource {resource_id} has no version {version}", resource_id=resource_id)
        return _row_to_entry(row)

    def scan(self, resource_type: str, include_deleted: bool = False) -> list[Resource]:
        query = f"SELECT {_RESOURCE_COLUMNS} FROM fhir_resources WHERE resource_type = %s"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        return [_row_to_resource(row) for row in self._fetch("scan", query, (resource_type,))]

    def _fetch(
        self,
        operation: str,
        query: str,
        params: tuple,
        resource_id: Optional[str] = None,
        one: bool = False
    ):
        self._ensure_schema()
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            cursor.execute(query, params)
            result = cursor.fetchone() if one else cursor.fetchall()
            cursor.close()
            # Read-only; end the implicit transaction before the connection goes back.
            conn.rollback()
            return result
        except psycopg2.Error as e:
            conn.rollback()
            raise self._storage_error(operation, e, resource_id)
        finally:
            self._return_connection(conn)

    def close(self) -> None:
        """Close the connection pool and release resources."""
        if self._connection_pool is not None:
            try:
                self._connection_pool.closeall()
                self._connection_pool = None
                logger.info("Closed PostgreSQL connection pool")
            except psycopg2.Error as e:
                logger.warning(f"Error closing connection pool: {str(e)}")
