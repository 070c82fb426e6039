"""
Issue tracker capability.

The orchestrator only talks to trackers through this interface, so any
tracker that can create, fetch, update, comment on and search issues can
stand in for GitHub.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from errorwatch.models.issue import TrackerIssue


class IssueTracker(ABC):
    """Operations the issue lifecycle needs from an external tracker.

    Implementations raise TrackerTransientError for failures worth
    retrying, TrackerNotFoundError for missing issues and
    TrackerPermanentError for everything else.
    """

    @abstractmethod
    async def create_issue(self, title: str, body: str, labels: List[str]) -> TrackerIssue:
        ...

    @abstractmethod
    async def get_issue(self, number: int) -> TrackerIssue:
        ...

    @abstractmethod
    async def update_issue_state(self, number: int, state: str) -> TrackerIssue:
        """Set an issue to ``open`` or ``closed``."""

    @abstractmethod
    async def add_comment(self, number: int, body: str) -> None:
        ...

    @abstractmethod
    async def search_issues(
        self,
        text: Optional[str] = None,
        labels: Optional[List[str]] = None,
        state: Optional[str] = None,
        sort: str = "updated",
        limit: int = 10
    ) -> List[TrackerIssue]:
        """
        Search issues by free text and labels, newest first by ``sort``.

        Args:
            text: Phrase the issue must contain
            labels: Labels the issue must carry (all of them)
            state: ``open`` or ``closed``; None for both
            sort: ``created`` or ``updated``
            limit: Maximum number of issues to return
        """

    async def find_recent_open_issue(
        self,
        labels: List[str],
        created_after: datetime
    ) -> Optional[TrackerIssue]:
        """
        Find an open issue with the given labels created after a cutoff.

        Args:
            labels: Labels the issue must carry
            created_after: Only issues created strictly after this time match

        Returns:
            The most recently created match, or None
        """
        issues = await self.search_issues(labels=labels, state="open", sort="created", limit=5)
        for issue in issues:
            if issue.created_at > created_after:
                return issue
        return None

    async def close(self) -> None:
        """Release any held connections."""
