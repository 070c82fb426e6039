"""
Unit tests for message normalization, fingerprinting and filtering.
"""

import hashlib

import pytest

from errorwatch.models.error_report import ErrorType, IncomingErrorReport
from errorwatch.models.settings import ErrorReportingSettings, FilterSettings
from errorwatch.services.fingerprint import (
    generate_fingerprint,
    get_fingerprint_components,
    hash8,
    normalize_message,
    sanitize_component,
    should_filter,
    url_path,
)

PROJECT_ID = "0f8e6a2c-1234-5678-9abc-def012345678"


def make_report(**overrides) -> IncomingErrorReport:
    data = {
        "error_type": "server",
        "error_code": "500",
        "message": "Timeout at 0x7fAB12CD, line 42, id 123e4567-e89b-12d3-a456-426614174000",
        "url": "https://app.example.com/api/users/42/",
    }
    data.update(overrides)
    return IncomingErrorReport(**data)


class TestNormalizeMessage:
    """Test message normalization rules."""

    def test_documented_example(self):
        message = "Timeout at 0x7fAB12CD, line 42, id 123e4567-e89b-12d3-a456-426614174000"

        assert normalize_message(message) == "timeout at 0xaddr, line n, id uuid"

    def test_line_numbers(self):
        assert normalize_message("Error on Line 17") == "error on line n"
        assert normalize_message("at foo (app.js:120:15)") == "at foo (app.js:n:n)"
        assert normalize_message("at bar (app.js:120)") == "at bar (app.js:n)"

    def test_timestamps(self):
        assert normalize_message("failed at 2024-05-01T12:30:45Z") == "failed at timestampz"
        assert normalize_message("failed at 2024-05-01 12:30:45") == "failed at timestamp"

    def test_differing_timestamps_normalize_identically(self):
        first = normalize_message("Job 2024-05-01T12:30:45 failed (worker.py:88)")
        second = normalize_message("Job 2024-06-17T08:01:59 failed (worker.py:91)")

        assert first == second == "job timestamp failed (worker.py:n)"

    def test_whitespace_collapsed_and_trimmed(self):
        assert normalize_message("  Connection \n\t refused  ") == "connection refused"

    def test_differing_dynamic_values_normalize_identically(self):
        first = "Timeout at 0x7fAB12CD, line 42, id 123e4567-e89b-12d3-a456-426614174000"
        second = "Timeout at 0x0000ffff, line 7, id 9f1c2d3e-aaaa-bbbb-cccc-0123456789ab"

        assert normalize_message(first) == normalize_message(second)


class TestHash8:
    """Test short message hashes."""

    def test_hash_is_eight_hex_chars_of_sha256(self):
        expected = hashlib.sha256(b"connection refused").hexdigest()[:8]

        assert hash8("Connection   REFUSED") == expected

    def test_hash_ignores_dynamic_values(self):
        assert hash8("ptr 0xdeadbeef") == hash8("ptr 0x1234")


class TestUrlPath:
    """Test URL path extraction."""

    def test_missing_url(self):
        assert url_path(None) == "unknown"
        assert url_path("") == "unknown"

    def test_numeric_and_uuid_segments_replaced(self):
        url = "https://app.example.com/projects/123e4567-e89b-12d3-a456-426614174000/errors/42?x=1"

        assert url_path(url) == "/projects/:id/errors/:id"

    def test_trailing_slashes_stripped(self):
        assert url_path("https://app.example.com/dashboard///") == "/dashboard"

    def test_root_path(self):
        assert url_path("https://app.example.com") == "/"
        assert url_path("https://app.example.com/") == "/"

    def test_mixed_segments_kept(self):
        assert url_path("https://app.example.com/v2/items") == "/v2/items"

    def test_unparseable_url_falls_back_to_hash(self):
        assert url_path("not a url") == hash8("not a url")
        assert url_path("http://[::1") == hash8("http://[::1")


class TestSanitizeComponent:
    """Test fingerprint component sanitizing."""

    def test_lowercases_and_replaces_invalid_chars(self):
        assert sanitize_component("TypeError") == "typeerror"
        assert sanitize_component("/api/users/:id") == "api-users-id"

    def test_collapses_and_trims_dashes(self):
        assert sanitize_component("--a__b  c--") == "a-b-c"

    def test_truncates_to_fifty_chars(self):
        assert len(sanitize_component("x" * 80)) == 50


class TestGenerateFingerprint:
    """Test fingerprint generation."""

    def test_fingerprint_format(self):
        report = make_report()

        fingerprint = generate_fingerprint(PROJECT_ID, report)

        assert fingerprint == f"0f8e6a2c:server:500:{hash8(report.message)}:api-users-id"

    def test_components(self):
        components = get_fingerprint_components(PROJECT_ID, make_report(error_code=None, url=None))

        assert components.project_id == "0f8e6a2c"
        assert components.error_type == "server"
        assert components.error_code == "unknown"
        assert components.url_path == "unknown"

    def test_deterministic_across_dynamic_values(self):
        first = make_report()
        second = make_report(
            message="Timeout at 0x0000ffff, line 7, id 9f1c2d3e-aaaa-bbbb-cccc-0123456789ab",
            url="https://app.example.com/api/users/99",
        )

        assert generate_fingerprint(PROJECT_ID, first) == generate_fingerprint(PROJECT_ID, second)

    def test_differs_by_project_type_and_code(self):
        base = generate_fingerprint(PROJECT_ID, make_report())

        assert generate_fingerprint("a1b2c3d4-0000", make_report()) != base
        assert generate_fingerprint(PROJECT_ID, make_report(error_type="client")) != base
        assert generate_fingerprint(PROJECT_ID, make_report(error_code="502")) != base

    def test_differs_by_message(self):
        base = generate_fingerprint(PROJECT_ID, make_report())
        other = generate_fingerprint(PROJECT_ID, make_report(message="Connection refused"))

        assert base != other


class TestShouldFilter:
    """Test project filter decisions."""

    def settings(self, **filters) -> ErrorReportingSettings:
        return ErrorReportingSettings(enabled=True, filters=FilterSettings(**filters))

    def test_ignore_pattern_matches_case_insensitively(self):
        settings = self.settings(ignore_patterns=["resizeobserver loop"])
        report = make_report(error_type="client", error_code=None, message="ResizeObserver loop limit exceeded")

        assert should_filter(report, settings) is True

    def test_ignore_pattern_applies_to_raw_message(self):
        settings = self.settings(ignore_patterns=[r"0x7fAB12CD"])

        assert should_filter(make_report(), settings) is True

    def test_invalid_pattern_is_skipped(self):
        settings = self.settings(ignore_patterns=["([unclosed", "timeout"])

        assert should_filter(make_report(), settings) is True

    def test_invalid_pattern_alone_does_not_filter(self):
        settings = self.settings(ignore_patterns=["([unclosed"])

        assert should_filter(make_report(), settings) is False

    def test_server_code_outside_allow_list_filtered(self):
        settings = self.settings(status_codes=[500, 502])

        assert should_filter(make_report(error_code="404"), settings) is True
        assert should_filter(make_report(error_code="502"), settings) is False

    def test_empty_allow_list_allows_all_codes(self):
        settings = self.settings(status_codes=[])

        assert should_filter(make_report(error_code="404"), settings) is False

    def test_non_numeric_server_code_not_filtered(self):
        settings = self.settings(status_codes=[500])

        assert should_filter(make_report(error_code="ECONNRESET"), settings) is False

    def test_client_errors_ignore_status_codes(self):
        settings = self.settings(status_codes=[500])

        assert should_filter(make_report(error_type="client", error_code="404"), settings) is False

    @pytest.mark.parametrize("error_type", [ErrorType.CLIENT, ErrorType.SERVER])
    def test_default_settings_keep_matching_reports(self, error_type):
        report = make_report(error_type=error_type.value, error_code="500")

        assert should_filter(report, ErrorReportingSettings(enabled=True)) is False
