"""Issue tracker data models."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class IssueOperation(str, Enum):
    """What the orchestrator did against the tracker."""

    CREATED = "created"
    UPDATED = "updated"
    REOPENED = "reopened"
    SKIPPED = "skipped"


class TrackerIssue(BaseModel):
    """Issue as reported by the tracker."""

    number: int
    title: str
    body: Optional[str] = None
    state: str
    html_url: str
    labels: List[str] = []
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None


class IssueResult(BaseModel):
    """Outcome of orchestrating one error report."""

    issue_number: int
    issue_url: str
    operation: IssueOperation
    message: Optional[str] = None


class RateLimitStatus(BaseModel):
    """Daily issue creation quota for a project."""

    issues_today: int
    max_issues_per_day: int
    within_limits: bool
