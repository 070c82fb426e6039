"""
Issue tracker integrations.
"""

from errorwatch.trackers.base import IssueTracker
from errorwatch.trackers.factory import IssueTrackerFactory
from errorwatch.trackers.github import GitHubIssueTracker

__all__ = [
    "IssueTracker",
    "IssueTrackerFactory",
    "GitHubIssueTracker",
]
