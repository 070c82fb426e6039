"""
Error intake: fingerprinting, filtering and deduplicated storage.

ErrorReportingService is what the ingestion path calls for every incoming
report. It never talks to the issue tracker; it only decides whether the
stored record is now eligible for an issue.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from errorwatch.exceptions import ErrorFilteredError, ReportingDisabledError
from errorwatch.models.error_report import (
    ErrorReport,
    ErrorReportResult,
    IncomingErrorReport,
    IssueState,
    ListErrorReportsParams,
    ListErrorReportsResult,
    ProjectErrorStats,
)
from errorwatch.models.settings import ErrorReportingSettings
from errorwatch.services.error_store import ErrorReportStore
from errorwatch.services.fingerprint import generate_fingerprint, should_filter
from errorwatch.services.settings_store import ProjectSettingsStore
from errorwatch.utils.logging import get_logger
from errorwatch.utils.metrics import emit_metric

logger = get_logger(__name__)

DEFAULT_STALE_DAYS = 7


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ErrorReportingService:
    """Deduplicates incoming error reports per project."""

    def __init__(
        self,
        error_store: ErrorReportStore,
        settings_store: ProjectSettingsStore,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the service.

        Args:
            error_store: Storage for deduplicated error reports
            settings_store: Source of per-project error reporting settings
            clock: Returns the current UTC time
        """
        self._errors = error_store
        self._settings = settings_store
        self._clock = clock

    async def process_error(self, project_id: str, report: IncomingErrorReport) -> ErrorReportResult:
        """
        Record one occurrence of an error.

        Args:
            project_id: Project the report belongs to
            report: Validated incoming report

        Returns:
            ErrorReportResult with the stored record, whether it was new, and
            whether the record should now get a tracker issue

        Raises:
            ReportingDisabledError: If the project has reporting switched off
            ErrorFilteredError: If project filters drop the report
        """
        settings = await self._settings.get_error_reporting_settings(project_id)
        if not settings.enabled:
            raise ReportingDisabledError(project_id)

        if should_filter(report, settings, project_id=project_id):
            logger.debug("Error report filtered", extra={"project_id": project_id})
            emit_metric("errors.filtered", 1, project_id=project_id)
            raise ErrorFilteredError(project_id)

        fingerprint = generate_fingerprint(project_id, report)
        error, is_new = await self._errors.upsert(project_id, fingerprint, report, self._clock())

        should_create_issue = (
            settings.create_issues
            and settings.tracker_configured
            and error.issue_number is None
            and error.occurrence_count >= settings.filters.min_occurrences
        )

        logger.info(
            "New error recorded" if is_new else "Error occurrence recorded",
            extra={
                "project_id": project_id,
                "error_id": error.id,
                "fingerprint": fingerprint,
                "occurrence_count": error.occurrence_count,
            }
        )
        emit_metric("errors.ingested", 1, project_id=project_id, is_new=is_new)

        return ErrorReportResult(
            error=error,
            is_new=is_new,
            should_create_issue=should_create_issue
        )

    async def list_errors(self, params: ListErrorReportsParams) -> ListErrorReportsResult:
        return await self._errors.list(params)

    async def get_error(self, error_id: str, project_id: str) -> Optional[ErrorReport]:
        """Get an error report, or None if it belongs to another project."""
        error = await self._errors.find_by_id(error_id)
        if error is None or error.project_id != project_id:
            return None
        return error

    async def get_project_stats(self, project_id: str) -> ProjectErrorStats:
        return await self._errors.get_project_stats(project_id)

    async def find_pending_issues(self, project_id: str) -> List[ErrorReport]:
        """Records still waiting for a tracker issue; empty without a tracker."""
        settings = await self._settings.get_error_reporting_settings(project_id)
        if not settings.tracker_configured:
            return []

        return await self._errors.find_pending_issue_creation(
            project_id, settings.filters.min_occurrences
        )

    async def find_stale_issues(self, project_id: str, stale_days: int = DEFAULT_STALE_DAYS) -> List[ErrorReport]:
        stale_before = self._clock() - timedelta(days=stale_days)
        return await self._errors.find_stale_issues(project_id, stale_before)

    async def link_issue(
        self,
        error_id: str,
        issue_number: int,
        state: IssueState = IssueState.OPEN
    ) -> Optional[ErrorReport]:
        return await self._errors.link_issue(error_id, issue_number, state)

    async def update_issue_state(self, error_id: str, state: IssueState) -> bool:
        return await self._errors.update_issue_state(error_id, state)

    async def is_enabled(self, project_id: str) -> bool:
        return await self._settings.is_error_reporting_enabled(project_id)

    async def get_settings(self, project_id: str) -> ErrorReportingSettings:
        return await self._settings.get_error_reporting_settings(project_id)
