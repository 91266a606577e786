"""Version tokens carried in ETag and If-Match headers.

Versions travel as weak entity tags, ``W/"<version>"``.
"""

import re
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Optional

from fhir_vault.domain.ports import InvalidQuery

_ETAG_PATTERN = re.compile(r'^(?:W/)?(?:"(\d+)"|(\d+))$')


def format_etag(version: int) -> str:
    return f'W/"{version}"'


def format_last_modified(value: datetime) -> str:
    """HTTP-date for the ``Last-Modified`` header."""
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def parse_if_match(header: Optional[str]) -> Optional[int]:
    """Extract the version an ``If-Match`` header pins a write to.

    Accepts ``W/"3"``, ``"3"``, ``W/3`` and ``3``; quotes must be balanced.
    A missing header or ``*`` means the write is not pinned.

    Raises:
        InvalidQuery: If the header is present but not a version token
    """
    if header is None:
        return None
    value = header.strip()
    if value in ("", "*"):
        return None
    match = _ETAG_PATTERN.match(value)
    if not match:
        raise InvalidQuery(f"Malformed If-Match header: '{header}'", parameter="If-Match")
    return int(match.group(1) or match.group(2))
