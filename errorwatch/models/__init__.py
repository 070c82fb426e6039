"""Data models for error intake and issue lifecycle."""

from .api_response import (
    BatchReportItem,
    BatchReportResponse,
    ReportErrorResponse,
    SweepResult,
)
from .error_report import (
    ErrorReport,
    ErrorReportResult,
    ErrorType,
    IncomingErrorReport,
    IssueState,
    ListErrorReportsParams,
    ListErrorReportsResult,
    OrderBy,
    OrderDirection,
    ProjectErrorStats,
)
from .issue import IssueOperation, IssueResult, RateLimitStatus, TrackerIssue
from .settings import ErrorReportingSettings, FilterSettings, RateLimitSettings

__all__ = [
    # Error report models
    "ErrorType",
    "IssueState",
    "IncomingErrorReport",
    "ErrorReport",
    "ErrorReportResult",
    "OrderBy",
    "OrderDirection",
    "ListErrorReportsParams",
    "ListErrorReportsResult",
    "ProjectErrorStats",
    # Settings models
    "ErrorReportingSettings",
    "FilterSettings",
    "RateLimitSettings",
    # Issue models
    "IssueOperation",
    "IssueResult",
    "RateLimitStatus",
    "TrackerIssue",
    # API response models
    "ReportErrorResponse",
    "BatchReportItem",
    "BatchReportResponse",
    "SweepResult",
]
