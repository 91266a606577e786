"""Query Engine.

Evaluates search queries against the visible resource set and lists
resource history, producing paginated ``SearchResult`` envelopes.

Evaluation model:
    filter the full visible set -> sort by (sort key, id) -> slice
    ``[offset, offset + count)``. The ordering and matching rules are a
    contract; a backend may narrow the scanned set, never change them.

Architecture:
    - Pure domain service; depends on LedgerPort only
    - Never takes the mutation lock: reads see either the pre- or the
      post-state of a concurrent write, never a partial one
"""

import logging
from typing import Optional, Union

from fhir_vault.domain.models import PATIENT, HistoryEntry, Resource, SearchResult
from fhir_vault.domain.ports import InvalidQuery, LedgerPort, NotFound, ResourceDeleted
from fhir_vault.domain.query import DEFAULT_COUNT, RawParams, SearchQuery, parse_search_params

logger = logging.getLogger(__name__)


class QueryEngine:
    """Read-side operations for one resource type.

    Parameters:
        ledger: Version Ledger to read from
        resource_type: Type this engine serves (``Patient``)
        default_count: Page size used when a request does not give one
    """

    def __init__(self, ledger: LedgerPort, resource_type: str = PATIENT, default_count: int = DEFAULT_COUNT):
        if default_count < 0:
            raise ValueError("default_count must be >= 0")
        self.ledger = ledger
        self.resource_type = resource_type
        self.default_count = default_count

    def parse(self, params: RawParams) -> SearchQuery:
        """Parse raw parameters with this engine's default page size."""
        return parse_search_params(params, default_count=self.default_count)

    def search(
        self,
        query: Union[SearchQuery, RawParams, None] = None,
        include_deleted: bool = False
    ) -> SearchResult:
        """Evaluate a search.

        Parameters:
            query: A parsed ``SearchQuery`` or raw parameters (parsed eagerly)
            include_deleted: Also consider soft-deleted resources

        Returns:
            SearchResult: One page of matches plus the unpaginated total

        Raises:
            InvalidQuery: If raw parameters are malformed
        """
        if query is None:
            query = SearchQuery(count=self.default_count)
        elif not isinstance(query, SearchQuery):
            query = self.parse(query)

        candidates = self.ledger.scan(self.resource_type, include_deleted=include_deleted)
        matched = query.order(r for r in candidates if query.matches(r))
        page = query.window(matched)

        logger.debug(
            f"Search {self.resource_type} filters={len(query.filters)} sort={query.sort} "
            f"total={len(matched)} returned={len(page)}"
        )
        return SearchResult(items=page, total=len(matched), offset=query.offset, count=query.count)

    def history(self, resource_id: str, offset: int = 0, count: Optional[int] = None) -> SearchResult:
        """List every version of a resource, newest first, deletions included.

        Raises:
            NotFound: If the resource never existed
            InvalidQuery: If ``offset`` or ``count`` is negative
        """
        if count is None:
            count = self.default_count
        if offset < 0:
            raise InvalidQuery("_offset must be >= 0", parameter="_offset")
        if count < 0:
            raise InvalidQuery("_count must be >= 0", parameter="_count")

        entries = self._history(resource_id)
        ordered = sorted(entries, key=lambda e: e.version, reverse=True)
        return SearchResult(
            items=ordered[offset:offset + count],
            total=len(ordered),
            offset=offset,
            count=count
        )

    def read(self, resource_id: str) -> Resource:
        """Return the current state of a live resource.

        Raises:
            NotFound: If the resource never existed
            ResourceDeleted: If the resource is soft-deleted
        """
        current = self.ledger.current_state(resource_id)
        if current.resource_type != self.resource_type:
            raise NotFound(f"{self.resource_type}/{resource_id} not found", resource_id=resource_id)
        if current.is_deleted:
            raise ResourceDeleted(
                f"{self.resource_type}/{resource_id} has been deleted",
                resource_id=resource_id,
                version=current.version,
                deleted_at=current.deleted_at
            )
        return current

    def vread(self, resource_id: str, version: int) -> HistoryEntry:
        """Return one historical version, including deletion versions.

        Raises:
            NotFound: If the resource or the version does not exist
        """
        entry = self.ledger.version_of(resource_id, version)
        if entry.resource_type != self.resource_type:
            raise NotFound(f"{self.resource_type}/{resource_id} not found", resource_id=resource_id)
        return entry

    def _history(self, resource_id: str) -> list[HistoryEntry]:
        entries = self.ledger.history_of(resource_id)
        if entries and entries[0].resource_type != self.resource_type:
            raise NotFound(f"{self.resource_type}/{resource_id} not found", resource_id=resource_id)
        return entries
