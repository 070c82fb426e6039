"""
Markdown content for tracker issues and comments.

Every issue body ends with a hidden marker carrying the error fingerprint,
so an issue can be matched back to its error report on search even when
the title was truncated or the body re-wrapped.
"""

import json
import re
from datetime import datetime
from typing import Optional

from errorwatch.models.error_report import ErrorReport, ErrorType

FINGERPRINT_MARKER = "<!-- FINGERPRINT:"
MAX_TITLE_LENGTH = 80
FOOTER = "---\n*Auto-generated by errorwatch error reporting*"

_FINGERPRINT_PATTERN = re.compile(re.escape(FINGERPRINT_MARKER) + r"\s*(\S+?)\s*-->", re.IGNORECASE)


def fingerprint_marker(fingerprint: str) -> str:
    return f"{FINGERPRINT_MARKER} {fingerprint} -->"


def extract_fingerprint(body: Optional[str]) -> Optional[str]:
    """
    Recover the fingerprint embedded in an issue body.

    Args:
        body: Issue body, possibly None for issues created without one

    Returns:
        The fingerprint, or None when the body carries no marker
    """
    if not body:
        return None

    # The real marker closes the body; earlier ones come from reported text
    matches = _FINGERPRINT_PATTERN.findall(body)
    return matches[-1] if matches else None


def generate_issue_title(error: ErrorReport) -> str:
    """Build a title like ``[Server] 500: Connection refused``."""
    type_label = "Client" if error.error_type == ErrorType.CLIENT else "Server"
    code_label = f"{error.error_code}: " if error.error_code else ""

    message = error.message
    if len(message) > MAX_TITLE_LENGTH:
        message = message[:MAX_TITLE_LENGTH - 3] + "..."

    return f"[{type_label}] {code_label}{message}"


def generate_issue_body(error: ErrorReport) -> str:
    """
    Build the markdown body of a new issue.

    Args:
        error: Error report the issue is opened for

    Returns:
        Markdown ending with the fingerprint marker
    """
    sections = [
        "## Error Report",
        "",
        f"**Type:** {error.error_type.value}",
        f"**Code:** {error.error_code or 'N/A'}",
        f"**First Seen:** {error.first_seen_at.isoformat()}",
        f"**Occurrences:** {error.occurrence_count}",
        "",
        "### Message",
        "```",
        error.message,
        "```",
    ]

    if error.stack_trace:
        sections += [
            "",
            "### Stack Trace",
            "<details>",
            "<summary>View stack trace</summary>",
            "",
            "```",
            error.stack_trace,
            "```",
            "</details>",
        ]

    sections += [
        "",
        "### Context",
        f"- **URL:** {error.url or 'N/A'}",
        f"- **User ID:** {error.user_id or 'N/A'}",
    ]

    if error.environment:
        sections += [
            "",
            "### Environment",
            "```json",
            json.dumps(error.environment, indent=2, default=str),
            "```",
        ]

    sections += ["", FOOTER, "", fingerprint_marker(error.fingerprint)]
    return "\n".join(sections)


def generate_occurrence_comment(error: ErrorReport, now: datetime) -> str:
    lines = [
        "## New Occurrence Detected",
        "",
        f"**Timestamp:** {now.isoformat()}",
        f"**Total Occurrences:** {error.occurrence_count}",
        f"**Last Seen:** {error.last_seen_at.isoformat()}",
    ]
    if error.url:
        lines.append(f"**URL:** {error.url}")
    if error.user_id:
        lines.append(f"**User ID:** {error.user_id}")

    lines += ["", FOOTER]
    return "\n".join(lines)


def generate_reopen_comment(error: ErrorReport, now: datetime) -> str:
    return "\n".join([
        "## Issue Reopened - Recurring Failure",
        "",
        f"**Timestamp:** {now.isoformat()}",
        "**Reason:** This issue was recently closed but the same error is occurring again",
        f"**Fingerprint:** `{error.fingerprint}`",
        "",
        "The error has recurred after the issue was closed, so the previous fix "
        "may be incomplete or the problem has regressed.",
        "",
        f"**Current Occurrences:** {error.occurrence_count}",
        "",
        FOOTER,
    ])


def generate_auto_close_comment(stale_days: int, now: datetime) -> str:
    return "\n".join([
        "## Auto-Closed",
        "",
        f"**Timestamp:** {now.isoformat()}",
        f"**Reason:** No occurrences detected in the last {stale_days} days",
        "",
        "This issue was closed automatically because the error has not been "
        "reported recently. It will be reopened if the error recurs.",
        "",
        FOOTER,
    ])
