"""Search Query Language.

A small, fixed filter/sort/paginate language over stored documents. Raw
search parameters are parsed eagerly into tagged variants (``SearchFilter``,
``SortSpec``) so the evaluator never deals with strings, and every
malformed input is rejected with ``InvalidQuery`` up front.

Supported parameters:
    - ``name``       substring, case-insensitive, over all name parts
    - ``gender``     exact token, case-sensitive
    - ``birthdate``  date with optional prefix eq|ne|gt|lt|ge|le
    - ``_sort``      one of birthdate, name, gender, _lastUpdated; ``-`` for descending
    - ``_count``     page size (default 10, >= 0)
    - ``_offset``    page start (default 0, >= 0)

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - Matching and ordering rules are the contract; backends only supply rows
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from fhir_vault.domain.enums import FilterKind, SearchPrefix
from fhir_vault.domain.models import Resource
from fhir_vault.domain.ports import InvalidQuery

DEFAULT_COUNT = 10

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_PREFIX_PATTERN = re.compile(r"^(eq|ne|gt|lt|ge|le)(.*)$")
_INTEGER_PATTERN = re.compile(r"^\d+$")

RawParams = Mapping[str, Union[str, Sequence[str]]]


# ============================================================================
# Field extraction
# ============================================================================

def name_text(document: Mapping[str, Any]) -> str:
    """Flatten every ``name[]`` entry into one lower-cased search string."""
    parts: list[str] = []
    for entry in document.get("name") or []:
        if not isinstance(entry, Mapping):
            continue
        for key in ("text", "family"):
            value = entry.get(key)
            if isinstance(value, str):
                parts.append(value)
        for key in ("prefix", "given", "suffix"):
            values = entry.get(key) or []
            parts.extend(v for v in values if isinstance(v, str))
    return " ".join(parts).casefold()


def primary_family(document: Mapping[str, Any]) -> Optional[str]:
    """Family name of the first ``name[]`` entry, case-folded for sorting."""
    names = document.get("name") or []
    if not names or not isinstance(names[0], Mapping):
        return None
    family = names[0].get("family")
    return family.casefold() if isinstance(family, str) else None


def birth_date(document: Mapping[str, Any]) -> Optional[date]:
    value = document.get("birthDate")
    if not isinstance(value, str) or not _DATE_PATTERN.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def gender(document: Mapping[str, Any]) -> Optional[str]:
    value = document.get("gender")
    return value if isinstance(value, str) else None


# ============================================================================
# Tagged variants
# ============================================================================

@dataclass(frozen=True)
class SearchParameter:
    """Definition of one filterable field.

    Attributes:
        name: Parameter name as it appears in a query string
        kind: How values are matched (substring, token, date)
        extract: Pulls the comparable value out of a document
    """
    name: str
    kind: FilterKind
    extract: Callable[[Mapping[str, Any]], Any]


SEARCH_PARAMETERS: dict[str, SearchParameter] = {
    "name": SearchParameter("name", FilterKind.SUBSTRING, name_text),
    "gender": SearchParameter("gender", FilterKind.TOKEN, gender),
    "birthdate": SearchParameter("birthdate", FilterKind.DATE, birth_date),
}

SORT_FIELDS: dict[str, Callable[[Resource], Any]] = {
    "birthdate": lambda r: birth_date(r.document),
    "name": lambda r: primary_family(r.document),
    "gender": lambda r: gender(r.document),
    "_lastUpdated": lambda r: r.updated_at,
}

CONTROL_PARAMETERS = frozenset({"_sort", "_count", "_offset"})


@dataclass(frozen=True)
class SearchFilter:
    """One (field, operator, value) predicate.

    ``value`` is normalized for matching (case-folded text, parsed date);
    ``raw`` keeps the value as the caller wrote it.
    """
    param: str
    kind: FilterKind
    value: Any
    prefix: SearchPrefix = SearchPrefix.EQ
    raw: str = ""

    def matches(self, document: Mapping[str, Any]) -> bool:
        actual = SEARCH_PARAMETERS[self.param].extract(document)

        if self.kind is FilterKind.SUBSTRING:
            return self.value in actual
        if self.kind is FilterKind.TOKEN:
            return actual == self.value
        if actual is None:
            return False
        return _compare(actual, self.prefix, self.value)


@dataclass(frozen=True)
class SortSpec:
    field: str
    descending: bool = False

    def __str__(self) -> str:
        return f"-{self.field}" if self.descending else self.field


@dataclass(frozen=True)
class SearchQuery:
    """A validated search request.

    Attributes:
        filters: Predicates, all of which must hold (AND)
        sort: Optional sort key; None means creation order
        offset: Index of the first returned match
        count: Maximum number of matches returned
    """
    filters: tuple[SearchFilter, ...] = field(default_factory=tuple)
    sort: Optional[SortSpec] = None
    offset: int = 0
    count: int = DEFAULT_COUNT

    def matches(self, resource: Resource) -> bool:
        return all(f.matches(resource.document) for f in self.filters)

    def order(self, resources: Iterable[Resource]) -> list[Resource]:
        """Sort by the sort key, then by id ascending.

        Resources without a value for the sort field always come last,
        themselves in ascending-id order.
        """
        by_id = sorted(resources, key=lambda r: r.id)
        if self.sort is None:
            return sorted(by_id, key=lambda r: r.created_at)

        extract = SORT_FIELDS[self.sort.field]
        present = [r for r in by_id if extract(r) is not None]
        missing = [r for r in by_id if extract(r) is None]
        # list.sort is stable with reverse=True, so equal keys keep id order.
        present.sort(key=extract, reverse=self.sort.descending)
        return present + missing

    def window(self, ordered: Sequence[Any]) -> list[Any]:
        return list(ordered[self.offset:self.offset + self.count])

    def to_params(self) -> list[tuple[str, str]]:
        """Render back to query-string pairs (used for bundle links)."""
        pairs = [(f.param, f.raw) for f in self.filters]
        if self.sort is not None:
            pairs.append(("_sort", str(self.sort)))
        return pairs


def _compare(actual: date, prefix: SearchPrefix, expected: date) -> bool:
    if prefix is SearchPrefix.EQ:
        return actual == expected
    if prefix is SearchPrefix.NE:
        return actual != expected
    if prefix is SearchPrefix.GT:
        return actual > expected
    if prefix is SearchPrefix.LT:
        return actual < expected
    if prefix is SearchPrefix.GE:
        return actual >= expected
    return actual <= expected


# ============================================================================
# Parsing
# ============================================================================

def _values(raw: Union[str, Sequence[str]]) -> list[str]:
    if isinstance(raw, str):
        return [raw]
    return list(raw)


def _parse_non_negative(param: str, raw: Union[str, Sequence[str]]) -> int:
    values = _values(raw)
    if len(values) != 1:
        raise InvalidQuery(f"{param} may only be given once", parameter=param)
    value = values[0].strip()
    if not _INTEGER_PATTERN.match(value):
        raise InvalidQuery(f"{param} must be a non-negative integer, got '{values[0]}'", parameter=param)
    return int(value)


def _parse_date_filter(param: str, raw: str) -> SearchFilter:
    prefix = SearchPrefix.EQ
    value = raw.strip()
    match = _PREFIX_PATTERN.match(value)
    if match:
        prefix = SearchPrefix(match.group(1))
        value = match.group(2)
    if not _DATE_PATTERN.match(value):
        raise InvalidQuery(f"{param} must be a date (YYYY-MM-DD) with an optional prefix, got '{raw}'", parameter=param)
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        raise InvalidQuery(f"{param} is not a valid calendar date: '{raw}'", parameter=param)
    return SearchFilter(param=param, kind=FilterKind.DATE, value=parsed, prefix=prefix, raw=raw)


def _parse_sort(raw: Union[str, Sequence[str]]) -> SortSpec:
    values = _values(raw)
    if len(values) != 1:
        raise InvalidQuery("_sort may only be given once", parameter="_sort")
    value = values[0].strip()
    if "," in value:
        raise InvalidQuery("Only a single sort key is supported", parameter="_sort")
    descending = value.startswith("-")
    name = value[1:] if descending else value
    if name not in SORT_FIELDS:
        raise InvalidQuery(
            f"Unsupported sort field '{name}'. Sortable: {sorted(SORT_FIELDS)}",
            parameter="_sort"
        )
    return SortSpec(field=name, descending=descending)


def parse_search_params(params: RawParams, default_count: int = DEFAULT_COUNT) -> SearchQuery:
    """Parse raw search parameters into a validated ``SearchQuery``.

    Parameters:
        params: Mapping of parameter name to one value or a list of values
                (repeated parameters are AND-combined)
        default_count: Page size when ``_count`` is absent

    Returns:
        SearchQuery: Validated query

    Raises:
        InvalidQuery: For unknown parameters, bad prefixes, malformed dates
                      or invalid pagination values

    Example:
        ```python
        query = parse_search_params({"gender": "male", "birthdate": "ge1990-01-01", "_sort": "-birthdate"})
        ```
    """
    filters: list[SearchFilter] = []
    sort: Optional[SortSpec] = None
    offset = 0
    count = default_count

    for param, raw in params.items():
        if param == "_sort":
            sort = _parse_sort(raw)
        elif param == "_count":
            count = _parse_non_negative(param, raw)
        elif param == "_offset":
            offset = _parse_non_negative(param, raw)
        elif param in SEARCH_PARAMETERS:
            definition = SEARCH_PARAMETERS[param]
            for value in _values(raw):
                if definition.kind is FilterKind.SUBSTRING:
                    filters.append(SearchFilter(param=param, kind=definition.kind, value=value.casefold(), raw=value))
                elif definition.kind is FilterKind.TOKEN:
                    filters.append(SearchFilter(param=param, kind=definition.kind, value=value, raw=value))
                else:
                    filters.append(_parse_date_filter(param, value))
        else:
            raise InvalidQuery(f"Unknown search parameter '{param}'", parameter=param)

    return SearchQuery(filters=tuple(filters), sort=sort, offset=offset, count=count)
