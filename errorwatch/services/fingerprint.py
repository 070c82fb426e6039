"""
Fingerprinting and filtering of incoming error reports.

A fingerprint identifies a class of structurally identical errors:

    {project[:8]}:{error_type}:{error_code}:{message_hash}:{url_path}

Messages are normalized before hashing so that reports differing only in
runtime values (line numbers, memory addresses, timestamps, UUIDs) share a
fingerprint. Everything here is pure; no storage or network access.
"""

import hashlib
import re
from typing import List, NamedTuple, Optional, Pattern, Tuple
from urllib.parse import urlparse

from errorwatch.models.error_report import ErrorType, IncomingErrorReport
from errorwatch.models.settings import ErrorReportingSettings
from errorwatch.utils.logging import get_logger

logger = get_logger(__name__)

UNKNOWN = "unknown"
MAX_COMPONENT_LENGTH = 50

_UUID = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"

# Applied in order. The colon rules skip times of day (12:30:45) so the
# timestamp rule still sees them. Lower-casing happens after the table so
# replacement tokens like 0xADDR end up lower-case in the final string.
NORMALIZATION_RULES: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\bline\s+\d+", re.IGNORECASE), "line N"),
    (re.compile(r"(?<!\d):\d+:"), ":N:"),
    (re.compile(r"(?<!\d):\d+\)"), ":N)"),
    (re.compile(r"0x[0-9a-fA-F]+"), "0xADDR"),
    (re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}"), "TIMESTAMP"),
    (re.compile(_UUID), "UUID"),
    (re.compile(r"\s+"), " "),
]

_UUID_SEGMENT = re.compile(r"/" + _UUID)
_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")
_TRAILING_SLASHES = re.compile(r"/+$")
_INVALID_COMPONENT_CHARS = re.compile(r"[^a-z0-9-]")
_DASH_RUNS = re.compile(r"-+")


class FingerprintComponents(NamedTuple):
    """The five raw parts a fingerprint is built from."""

    project_id: str
    error_type: str
    error_code: str
    message_hash: str
    url_path: str


def normalize_message(message: str) -> str:
    """Strip dynamic substrings from an error message."""
    normalized = message
    for pattern, replacement in NORMALIZATION_RULES:
        normalized = pattern.sub(replacement, normalized)
    return normalized.strip().lower()


def hash8(text: str) -> str:
    """First 8 hex chars of the SHA-256 of the normalized text.

    Short on purpose: collisions are possible across the whole table but
    not expected within one project.
    """
    digest = hashlib.sha256(normalize_message(text).encode("utf-8")).hexdigest()
    return digest[:8]


def url_path(url: Optional[str]) -> str:
    """Reduce a URL to its path with ID-like segments replaced by ``:id``.

    Falls back to a hash of the raw URL when it cannot be parsed.
    """
    if not url:
        return UNKNOWN

    try:
        parsed = urlparse(url)
    except ValueError:
        return hash8(url)

    if not parsed.scheme or not parsed.netloc:
        return hash8(url)

    path = _UUID_SEGMENT.sub("/:id", parsed.path)
    path = _NUMERIC_SEGMENT.sub("/:id", path)
    path = _TRAILING_SLASHES.sub("", path)
    return path or "/"


def sanitize_component(component: str) -> str:
    """Make a component safe for use inside a fingerprint."""
    sanitized = _INVALID_COMPONENT_CHARS.sub("-", component.lower())
    sanitized = _DASH_RUNS.sub("-", sanitized).strip("-")
    return sanitized[:MAX_COMPONENT_LENGTH]


def get_fingerprint_components(project_id: str, report: IncomingErrorReport) -> FingerprintComponents:
    return FingerprintComponents(
        project_id=project_id[:8],
        error_type=ErrorType(report.error_type).value,
        error_code=report.error_code or UNKNOWN,
        message_hash=hash8(report.message),
        url_path=url_path(report.url),
    )


def generate_fingerprint(project_id: str, report: IncomingErrorReport) -> str:
    """
    Compute the deduplication key for a report.

    Depends only on the project, error type, error code, normalized message
    and URL path, so the result is stable across calls and wall-clock time.
    """
    components = get_fingerprint_components(project_id, report)
    return ":".join(sanitize_component(c) for c in components)


def _matches_ignore_pattern(message: str, patterns: List[str], project_id: Optional[str]) -> bool:
    for pattern in patterns:
        try:
            if re.search(pattern, message, re.IGNORECASE):
                return True
        except re.error as e:
            logger.warning(
                f"Skipping invalid ignore pattern {pattern!r}: {e}",
                extra={"project_id": project_id} if project_id else None
            )
    return False


def should_filter(
    report: IncomingErrorReport,
    settings: ErrorReportingSettings,
    project_id: Optional[str] = None
) -> bool:
    """
    Decide whether project filters drop this report.

    A report is dropped when its raw message matches an ignore pattern, or
    when it is a server error with a numeric code outside a non-empty
    status code allow-list. Invalid patterns are logged and skipped.
    """
    filters = settings.filters

    if filters.ignore_patterns and _matches_ignore_pattern(
        report.message, filters.ignore_patterns, project_id
    ):
        return True

    if report.error_type == ErrorType.SERVER and report.error_code and filters.status_codes:
        try:
            status_code = int(report.error_code)
        except ValueError:
            return False
        if status_code not in filters.status_codes:
            return True

    return False
