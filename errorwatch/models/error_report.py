"""Error report data models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorType(str, Enum):
    """Origin of a reported error."""

    CLIENT = "client"
    SERVER = "server"


class IssueState(str, Enum):
    """State of the tracker issue linked to an error report."""

    NONE = "none"
    OPEN = "open"
    CLOSED = "closed"


class IncomingErrorReport(BaseModel):
    """Raw error report as received from the ingestion path."""

    error_type: ErrorType
    error_code: Optional[str] = None
    message: str = Field(min_length=1)
    stack_trace: Optional[str] = None
    url: Optional[str] = None
    user_id: Optional[str] = None
    environment: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


class ErrorReport(BaseModel):
    """Deduplicated error record, one per (project_id, fingerprint)."""

    id: str
    project_id: str
    fingerprint: str
    error_type: ErrorType
    error_code: Optional[str] = None
    message: str
    stack_trace: Optional[str] = None
    url: Optional[str] = None
    user_id: Optional[str] = None
    environment: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    occurrence_count: int = Field(default=1, ge=1)
    first_seen_at: datetime
    last_seen_at: datetime
    issue_number: Optional[int] = None
    issue_state: IssueState = IssueState.NONE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ErrorReportResult(BaseModel):
    """Outcome of processing one incoming report."""

    error: ErrorReport
    is_new: bool
    should_create_issue: bool


class OrderBy(str, Enum):
    """Sort keys accepted by error listings."""

    LAST_SEEN_AT = "last_seen_at"
    FIRST_SEEN_AT = "first_seen_at"
    OCCURRENCE_COUNT = "occurrence_count"


class OrderDirection(str, Enum):
    """Sort direction for error listings."""

    ASC = "ASC"
    DESC = "DESC"


class ListErrorReportsParams(BaseModel):
    """Filters and pagination for listing a project's errors."""

    project_id: str
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
    error_type: Optional[ErrorType] = None
    error_code: Optional[str] = None
    issue_state: Optional[IssueState] = None
    min_occurrences: Optional[int] = None
    since: Optional[datetime] = None
    order_by: OrderBy = OrderBy.LAST_SEEN_AT
    order_dir: OrderDirection = OrderDirection.DESC


class ListErrorReportsResult(BaseModel):
    """One page of error reports."""

    errors: List[ErrorReport] = []
    total: int
    limit: int
    offset: int


class ProjectErrorStats(BaseModel):
    """Aggregate error statistics for a project."""

    total_errors: int = 0
    total_occurrences: int = 0
    client_errors: int = 0
    server_errors: int = 0
    with_issues: int = 0
    last_error_at: Optional[datetime] = None
