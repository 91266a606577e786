"""Version Ledger implementations.

Each adapter implements LedgerPort over one storage substrate: process
memory, DuckDB or PostgreSQL.
"""

from fhir_vault.adapters.storage.duckdb_adapter import DuckDBLedger
from fhir_vault.adapters.storage.memory_adapter import InMemoryLedger
from fhir_vault.adapters.storage.postgresql_adapter import PostgreSQLLedger

__all__ = ["InMemoryLedger", "DuckDBLedger", "PostgreSQLLedger"]
