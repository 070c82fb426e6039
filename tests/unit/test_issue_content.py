"""
Unit tests for issue titles, bodies and comments.
"""

from datetime import datetime, timezone

import pytest

from errorwatch.models.error_report import ErrorReport
from errorwatch.services.issue_content import (
    FOOTER,
    MAX_TITLE_LENGTH,
    extract_fingerprint,
    fingerprint_marker,
    generate_auto_close_comment,
    generate_issue_body,
    generate_issue_title,
    generate_occurrence_comment,
    generate_reopen_comment,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
FINGERPRINT = "0f8e6a2c:server:500:abcd1234:api-orders-id"


def make_error(**overrides) -> ErrorReport:
    data = {
        "id": "err-1",
        "project_id": "0f8e6a2c-1234-5678-9abc-def012345678",
        "fingerprint": FINGERPRINT,
        "error_type": "server",
        "error_code": "500",
        "message": "Connection refused",
        "url": "https://app.example.com/api/orders/7",
        "occurrence_count": 4,
        "first_seen_at": NOW,
        "last_seen_at": NOW,
    }
    data.update(overrides)
    return ErrorReport(**data)


class TestTitle:
    """Test issue titles."""

    def test_server_title_with_code(self):
        assert generate_issue_title(make_error()) == "[Server] 500: Connection refused"

    def test_client_title_without_code(self):
        error = make_error(error_type="client", error_code=None, message="x is undefined")

        assert generate_issue_title(error) == "[Client] x is undefined"

    def test_long_message_truncated(self):
        title = generate_issue_title(make_error(message="a" * 200))

        assert title == "[Server] 500: " + "a" * (MAX_TITLE_LENGTH - 3) + "..."

    def test_message_at_limit_kept(self):
        message = "b" * MAX_TITLE_LENGTH

        assert generate_issue_title(make_error(message=message)).endswith(message)


class TestFingerprintMarker:
    """Test embedding and recovering fingerprints."""

    def test_marker_round_trip(self):
        body = generate_issue_body(make_error())

        assert body.endswith(fingerprint_marker(FINGERPRINT))
        assert extract_fingerprint(body) == FINGERPRINT

    @pytest.mark.parametrize("body", [
        "<!-- FINGERPRINT:0f8e6a2c:server:500:abcd1234:api-orders-id-->",
        "text\n<!-- fingerprint:   0f8e6a2c:server:500:abcd1234:api-orders-id   -->\nmore",
    ])
    def test_marker_spacing_and_case_tolerated(self, body):
        assert extract_fingerprint(body) == FINGERPRINT

    def test_marker_in_reported_text_ignored(self):
        error = make_error(
            message="Render failed near <!-- FINGERPRINT: other-fp -->",
            stack_trace="at render (<!-- FINGERPRINT: stack-fp -->)"
        )

        assert extract_fingerprint(generate_issue_body(error)) == FINGERPRINT

    @pytest.mark.parametrize("body", [None, "", "No marker here", "<!-- FINGERPRINT: -->"])
    def test_missing_marker(self, body):
        assert extract_fingerprint(body) is None


class TestBody:
    """Test issue body sections."""

    def test_body_sections(self):
        body = generate_issue_body(make_error(stack_trace="at main (app.js:1:1)", environment={"os": "linux"}))

        assert "**Type:** server" in body
        assert "**Occurrences:** 4" in body
        assert "### Stack Trace" in body
        assert "at main (app.js:1:1)" in body
        assert '"os": "linux"' in body
        assert FOOTER in body

    def test_optional_sections_omitted(self):
        body = generate_issue_body(make_error(error_code=None, url=None))

        assert "### Stack Trace" not in body
        assert "### Environment" not in body
        assert "**Code:** N/A" in body
        assert "**URL:** N/A" in body


class TestComments:
    """Test comment bodies."""

    def test_occurrence_comment(self):
        comment = generate_occurrence_comment(make_error(user_id="u-9"), NOW)

        assert "## New Occurrence Detected" in comment
        assert "**Total Occurrences:** 4" in comment
        assert "**User ID:** u-9" in comment
        assert NOW.isoformat() in comment

    def test_reopen_comment(self):
        comment = generate_reopen_comment(make_error(), NOW)

        assert "Reopened" in comment
        assert f"`{FINGERPRINT}`" in comment
        assert "**Current Occurrences:** 4" in comment

    def test_auto_close_comment(self):
        comment = generate_auto_close_comment(7, NOW)

        assert "## Auto-Closed" in comment
        assert "last 7 days" in comment
