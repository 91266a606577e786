"""Dependency injection for the FHIR API.

Builds the configured ledger once per process and hands engines built on it
to the route handlers. Tests replace ``get_ledger`` through
``app.dependency_overrides``.
"""

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from fhir_vault.domain.ports import LedgerPort, StorageError
from fhir_vault.domain.services import MutationEngine, QueryEngine
from fhir_vault.domain.validation import PatientValidator
from fhir_vault.infrastructure.settings import settings
from fhir_vault.main import create_ledger, create_mutation_engine, create_query_engine

logger = logging.getLogger(__name__)


@lru_cache()
def get_ledger() -> LedgerPort:
    """Get the ledger instance (cached).

    The schema is initialized on first use so a fresh database is usable
    without running ``fhir-vault init-db`` first.

    Raises:
        ValueError: If the database type is unsupported
        StorageError: If the schema cannot be initialized
    """
    ledger = create_ledger(settings.db_config)
    result = ledger.initialize_schema()
    if not result.is_success():
        raise StorageError(result.error, operation="initialize_schema")
    logger.debug(f"Ledger ready: {settings.db_config.describe()}")
    return ledger


LedgerDep = Annotated[LedgerPort, Depends(get_ledger)]


def get_mutation_engine(ledger: LedgerDep) -> MutationEngine:
    return create_mutation_engine(ledger)


def get_query_engine(ledger: LedgerDep) -> QueryEngine:
    return create_query_engine(ledger, settings.default_count)


def get_validator() -> PatientValidator:
    return PatientValidator()


MutationEngineDep = Annotated[MutationEngine, Depends(get_mutation_engine)]
QueryEngineDep = Annotated[QueryEngine, Depends(get_query_engine)]
ValidatorDep = Annotated[PatientValidator, Depends(get_validator)]
