"""FHIR Envelope Models.

Bundles wrap search and history results with their total and paging links;
OperationOutcome carries errors and validation reports; CapabilityStatement
describes what the server supports.
"""

from datetime import datetime
from typing import Any, Optional, Sequence
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field

from fhir_vault.domain.enums import BundleType, IssueSeverity, IssueType
from fhir_vault.domain.models import HistoryEntry, SearchResult
from fhir_vault.domain.query import SEARCH_PARAMETERS, SearchQuery
from fhir_vault.domain.utils import utcnow


class BundleLink(BaseModel):
    relation: str
    url: str


class BundleEntryRequest(BaseModel):
    method: str
    url: str


class BundleEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_url: Optional[str] = Field(None, alias="fullUrl")
    resource: dict[str, Any]
    request: Optional[BundleEntryRequest] = None


class Bundle(BaseModel):
    """FHIR Bundle carrying one page of a result set."""

    model_config = ConfigDict(populate_by_name=True)

    resource_type: str = Field("Bundle", alias="resourceType")
    type: BundleType
    total: int
    link: list[BundleLink] = Field(default_factory=list)
    entry: list[BundleEntry] = Field(default_factory=list)

    @classmethod
    def searchset(
        cls,
        result: SearchResult,
        base_url: str,
        query: Optional[SearchQuery] = None
    ) -> "Bundle":
        """Build a searchset Bundle from a page of ``Resource`` matches.

        Parameters:
            result: Page of matches from the Query Engine
            base_url: Type-level endpoint, e.g. ``http://host/fhir/Patient``
            query: The query that produced ``result``; its filters and sort
                   are echoed into the paging links
        """
        entries = [
            BundleEntry(
                full_url=f"{base_url}/{resource.id}",
                resource=resource.to_fhir(),
            )
            for resource in result.items
        ]
        extra = query.to_params() if query is not None else []
        return cls(
            type=BundleType.SEARCHSET,
            total=result.total,
            link=_paging_links(base_url, result, extra),
            entry=entries,
        )

    @classmethod
    def history(cls, result: SearchResult, base_url: str, resource_id: str) -> "Bundle":
        """Build a history Bundle from a page of ``HistoryEntry`` snapshots.

        Deletion versions carry a ``DELETE`` request; version 1 a ``POST``;
        every other version a ``PUT``.
        """
        resource_url = f"{base_url}/{resource_id}"
        entries = []
        for snapshot in result.items:
            entries.append(
                BundleEntry(
                    full_url=resource_url,
                    resource=snapshot.to_fhir(),
                    request=BundleEntryRequest(
                        method=_history_method(snapshot),
                        url=f"{resource_url}/_history/{snapshot.version}",
                    ),
                )
            )
        return cls(
            type=BundleType.HISTORY,
            total=result.total,
            link=_paging_links(f"{resource_url}/_history", result, []),
            entry=entries,
        )

    def to_fhir(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def _history_method(snapshot: HistoryEntry) -> str:
    if snapshot.is_deletion:
        return "DELETE"
    if snapshot.version == 1:
        return "POST"
    return "PUT"


def _page_url(base_url: str, extra: Sequence[tuple[str, str]], offset: int, count: int) -> str:
    params = list(extra) + [("_count", str(count)), ("_offset", str(offset))]
    return f"{base_url}?{urlencode(params)}"


def _paging_links(base_url: str, result: SearchResult, extra: Sequence[tuple[str, str]]) -> list[BundleLink]:
    links = [BundleLink(relation="self", url=_page_url(base_url, extra, result.offset, result.count))]
    if result.has_next:
        links.append(BundleLink(relation="next", url=_page_url(base_url, extra, result.next_offset, result.count)))
    if result.has_previous:
        links.append(
            BundleLink(relation="previous", url=_page_url(base_url, extra, result.previous_offset, result.count))
        )
    return links


# ============================================================================
# OperationOutcome
# ============================================================================

class OperationOutcomeIssue(BaseModel):
    severity: IssueSeverity
    code: IssueType
    diagnostics: Optional[str] = None
    expression: list[str] = Field(default_factory=list)


class OperationOutcome(BaseModel):
    """FHIR OperationOutcome used for error bodies and ``$validate`` reports."""

    model_config = ConfigDict(populate_by_name=True)

    resource_type: str = Field("OperationOutcome", alias="resourceType")
    issue: list[OperationOutcomeIssue] = Field(default_factory=list)

    @classmethod
    def error(cls, code: IssueType, diagnostics: str) -> "OperationOutcome":
        return cls(issue=[OperationOutcomeIssue(severity=IssueSeverity.ERROR, code=code, diagnostics=diagnostics)])

    @classmethod
    def from_issues(cls, code: IssueType, messages: Sequence[str]) -> "OperationOutcome":
        return cls(
            issue=[
                OperationOutcomeIssue(severity=IssueSeverity.ERROR, code=code, diagnostics=message)
                for message in messages
            ]
        )

    @classmethod
    def success(cls, message: str) -> "OperationOutcome":
        return cls(
            issue=[
                OperationOutcomeIssue(
                    severity=IssueSeverity.INFORMATION,
                    code=IssueType.INFORMATIONAL,
                    diagnostics=message,
                )
            ]
        )

    def to_fhir(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ============================================================================
# CapabilityStatement
# ============================================================================

def capability_statement(
    software_name: str,
    software_version: str,
    resource_type: str,
    date: Optional[datetime] = None
) -> dict[str, Any]:
    """Describe the interactions and search parameters this server supports."""
    search_params = [
        {"name": name, "type": "string" if p.kind.value == "substring" else p.kind.value}
        for name, p in SEARCH_PARAMETERS.items()
    ]
    return {
        "resourceType": "CapabilityStatement",
        "status": "active",
        "date": (date or utcnow()).date().isoformat(),
        "kind": "instance",
        "software": {"name": software_name, "version": software_version},
        "fhirVersion": "4.0.1",
        "format": ["json"],
        "rest": [
            {
                "mode": "server",
                "resource": [
                    {
                        "type": resource_type,
                        "versioning": "versioned",
                        "readHistory": True,
                        "updateCreate": False,
                        "conditionalUpdate": False,
                        "conditionalDelete": "not-supported",
                        "interaction": [
                            {"code": code}
                            for code in ("read", "vread", "update", "delete", "history-instance", "create", "search-type")
                        ],
                        "searchParam": search_params,
                        "operation": [{"name": "validate"}],
                    }
                ],
            }
        ],
    }
