"""Composition root for FHIR-Vault.

Selects the Version Ledger implementation from configuration and wires the
Mutation and Query engines on top of it. Both the CLI and the HTTP API build
their object graph through these functions.

Architecture:
    - Follows Hexagonal Architecture principles
    - Storage adapter is configured via configuration manager
    - Engines only ever see LedgerPort and ResourceValidator
"""

import logging
from typing import Optional

from fhir_vault.adapters.storage import DuckDBLedger, InMemoryLedger, PostgreSQLLedger
from fhir_vault.domain.ports import LedgerPort
from fhir_vault.domain.services import MutationEngine, QueryEngine
from fhir_vault.domain.validation import PatientValidator
from fhir_vault.infrastructure.config_manager import DatabaseConfig, get_database_config

logger = logging.getLogger(__name__)


def create_ledger(db_config: Optional[DatabaseConfig] = None) -> LedgerPort:
    """Create the Version Ledger selected by configuration.

    Parameters:
        db_config: Explicit configuration; loaded from the environment when omitted

    Returns:
        LedgerPort: Ledger instance (schema not yet initialized)

    Raises:
        ValueError: If the database type is unsupported
    """
    if db_config is None:
        db_config = get_database_config()

    if db_config.db_type == "memory":
        logger.info("Initializing in-memory ledger")
        return InMemoryLedger()
    elif db_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB ledger with path: {db_config.db_path or ':memory:'}")
        return DuckDBLedger(db_config=db_config)
    elif db_config.db_type == "postgresql":
        logger.info(f"Initializing PostgreSQL ledger with host: {db_config.host}")
        return PostgreSQLLedger(db_config=db_config)
    else:
        raise ValueError(f"Unsupported database type: {db_config.db_type}")


def create_mutation_engine(ledger: LedgerPort) -> MutationEngine:
    return MutationEngine(ledger, PatientValidator())


def create_query_engine(ledger: LedgerPort, default_count: Optional[int] = None) -> QueryEngine:
    if default_count is None:
        return QueryEngine(ledger)
    return QueryEngine(ledger, default_count=default_count)
