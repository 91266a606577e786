"""Domain layer for FHIR-Vault.

Versioned resource models, the ledger and validator ports, the search
query language and the lifecycle and query engines. Pure Python with no
dependencies beyond Pydantic.
"""

from .models import HistoryEntry, Resource, SearchResult

__all__ = [
    "Resource",
    "HistoryEntry",
    "SearchResult",
]
