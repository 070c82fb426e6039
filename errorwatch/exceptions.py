"""Exception hierarchy for error intake and issue lifecycle handling."""

from typing import Optional


class ErrorWatchError(Exception):
    """Base exception for errorwatch."""
    pass


class ReportingDisabledError(ErrorWatchError):
    """Raised when error reporting is not enabled for a project."""
    
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__("Error reporting is not enabled for this project")


class ErrorFilteredError(ErrorWatchError):
    """Raised when a report is dropped by project filters.
    
    Callers treat this as an accepted submission, not a failure.
    """
    
    def __init__(self, project_id: str, reason: str = "filtered"):
        self.project_id = project_id
        self.reason = reason
        super().__init__("Error filtered by project settings")


class TrackerNotConfiguredError(ErrorWatchError):
    """Raised when an issue tracker is requested for a project without one."""
    pass


class TrackerError(ErrorWatchError):
    """Base exception for issue tracker failures."""
    
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TrackerTransientError(TrackerError):
    """Tracker failure that may succeed on retry (timeouts, 5xx, rate limits)."""
    pass


class TrackerPermanentError(TrackerError):
    """Tracker failure that won't succeed on retry."""
    pass


class TrackerNotFoundError(TrackerPermanentError):
    """The requested issue does not exist on the tracker."""
    pass
