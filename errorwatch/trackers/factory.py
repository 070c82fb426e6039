"""
Builds issue trackers from project settings.

Trackers are cached per (repository, token) so their HTTP connection
pool and circuit breaker are shared across orchestration jobs.
"""

from typing import Dict, Optional, Tuple

from errorwatch.exceptions import TrackerNotConfiguredError
from errorwatch.models.settings import ErrorReportingSettings
from errorwatch.trackers.base import IssueTracker
from errorwatch.trackers.github import GitHubIssueTracker
from errorwatch.utils.logging import get_logger

logger = get_logger(__name__)


class IssueTrackerFactory:
    """Hands out one tracker per configured repository."""

    def __init__(self, api_url: Optional[str] = None, timeout: Optional[float] = None):
        self._api_url = api_url
        self._timeout = timeout
        self._trackers: Dict[Tuple[str, str], IssueTracker] = {}

    def get_tracker(self, settings: ErrorReportingSettings) -> IssueTracker:
        """
        Get the tracker for a project's settings.

        Raises:
            TrackerNotConfiguredError: If issue creation is off or the
                repository or token is missing
        """
        if not settings.tracker_configured:
            raise TrackerNotConfiguredError("Issue tracker is not configured for this project")

        key = (settings.tracker_repo, settings.tracker_token)
        tracker = self._trackers.get(key)
        if tracker is None:
            tracker = GitHubIssueTracker(
                repo=settings.tracker_repo,
                token=settings.tracker_token,
                api_url=self._api_url,
                timeout=self._timeout,
            )
            self._trackers[key] = tracker
            logger.debug(f"Created issue tracker for {settings.tracker_repo}")
        return tracker

    async def close(self) -> None:
        for tracker in self._trackers.values():
            await tracker.close()
        self._trackers.clear()
