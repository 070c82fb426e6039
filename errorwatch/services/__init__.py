"""
Services for error intake and issue lifecycle management.
"""

from errorwatch.services.error_reporting import ErrorReportingService
from errorwatch.services.issue_orchestrator import IssueLifecycleOrchestrator
from errorwatch.services.issue_dispatcher import IssueDispatcher

__all__ = [
    "ErrorReportingService",
    "IssueLifecycleOrchestrator",
    "IssueDispatcher",
]
