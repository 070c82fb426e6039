"""Per-project error reporting settings."""

from typing import List, Optional

from pydantic import BaseModel, Field


class RateLimitSettings(BaseModel):
    """Issue creation quota."""

    max_issues_per_day: int = 10


class FilterSettings(BaseModel):
    """Filters applied before a report is stored."""

    min_occurrences: int = 1
    ignore_patterns: List[str] = []
    status_codes: List[int] = Field(default_factory=lambda: [500, 502, 503])


class ErrorReportingSettings(BaseModel):
    """Error reporting configuration for one project.

    A project without a settings row gets these defaults, which leave
    reporting disabled.
    """

    enabled: bool = False
    create_issues: bool = False
    tracker_repo: Optional[str] = None
    tracker_token: Optional[str] = None
    issue_labels: List[str] = Field(default_factory=lambda: ["bug", "auto-generated"])
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    filters: FilterSettings = Field(default_factory=FilterSettings)

    @property
    def tracker_configured(self) -> bool:
        """Whether issue creation is switched on and the tracker is reachable."""
        return bool(self.create_issues and self.tracker_repo and self.tracker_token)
