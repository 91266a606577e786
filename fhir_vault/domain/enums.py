"""Domain Enumerations.

Value sets shared by the domain models, the query language and the
result envelopes. Values mirror the FHIR R4 code systems they stand for.
"""

from enum import Enum


class AdministrativeGender(str, Enum):
    """FHIR AdministrativeGender value set."""
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    UNKNOWN = "unknown"


class SearchPrefix(str, Enum):
    """Comparison prefixes accepted on ordered search parameters (dates)."""
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GE = "ge"
    LE = "le"


class FilterKind(str, Enum):
    """How a search parameter is matched against a stored document."""
    SUBSTRING = "substring"
    TOKEN = "token"
    DATE = "date"


class BundleType(str, Enum):
    """FHIR Bundle types produced by this server."""
    SEARCHSET = "searchset"
    HISTORY = "history"


class IssueSeverity(str, Enum):
    """OperationOutcome issue severity."""
    ERROR = "error"
    INFORMATION = "information"


class IssueType(str, Enum):
    """Subset of the FHIR IssueType codes raised by the store."""
    INVALID = "invalid"
    STRUCTURE = "structure"
    NOT_FOUND = "not-found"
    DELETED = "deleted"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    EXCEPTION = "exception"
    INFORMATIONAL = "informational"
