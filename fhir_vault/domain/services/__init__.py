"""Domain services: the Mutation Engine and the Query Engine."""

from fhir_vault.domain.services.mutation_engine import MutationEngine
from fhir_vault.domain.services.query_engine import QueryEngine

__all__ = ["MutationEngine", "QueryEngine"]
