"""
Issue Lifecycle Orchestrator.

Keeps the tracker issue of an error report in step with whether the error
keeps happening:

- no issue yet: relink an existing issue carrying the fingerprint marker,
  attach to a very recent issue of the project (noise guard), or create one
  within the daily quota
- open issue: post an occurrence comment unless the issue was touched
  within the comment cooldown
- closed issue: reopen it when closed recently, otherwise start over as if
  no issue existed
- sweeps: proactively create pending issues and auto-close stale ones

The tracker is the source of truth for issue state; the local record is the
source of truth for occurrence counts.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from errorwatch.exceptions import TrackerNotFoundError
from errorwatch.models.api_response import SweepResult
from errorwatch.models.error_report import ErrorReport, IssueState
from errorwatch.models.issue import IssueOperation, IssueResult, TrackerIssue
from errorwatch.models.settings import ErrorReportingSettings
from errorwatch.services.error_store import ErrorReportStore
from errorwatch.services.issue_content import (
    extract_fingerprint,
    generate_auto_close_comment,
    generate_issue_body,
    generate_issue_title,
    generate_occurrence_comment,
    generate_reopen_comment,
)
from errorwatch.services.rate_limiter import IssueRateLimiter
from errorwatch.services.settings_store import ProjectSettingsStore
from errorwatch.trackers.base import IssueTracker
from errorwatch.trackers.factory import IssueTrackerFactory
from errorwatch.utils.logging import get_logger, log_error_with_context, log_issue_operation
from errorwatch.utils.metrics import SweepMetrics, emit_metric
from errorwatch.utils.resilience import handle_partial_failure

logger = get_logger(__name__)

NOISE_GUARD_HOURS = 24
COMMENT_COOLDOWN_HOURS = 1
REOPEN_WINDOW_DAYS = 7
AUTO_CLOSE_STALE_DAYS = 7


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IssueLifecycleOrchestrator:
    """Applies the issue state machine to error reports."""

    def __init__(
        self,
        error_store: ErrorReportStore,
        settings_store: ProjectSettingsStore,
        tracker_factory: IssueTrackerFactory,
        rate_limiter: IssueRateLimiter,
        clock: Callable[[], datetime] = utc_now,
        noise_guard_hours: int = NOISE_GUARD_HOURS,
        comment_cooldown_hours: int = COMMENT_COOLDOWN_HOURS,
        reopen_window_days: int = REOPEN_WINDOW_DAYS,
        stale_days: int = AUTO_CLOSE_STALE_DAYS
    ):
        """
        Initialize the orchestrator.

        Args:
            error_store: Storage for deduplicated error reports
            settings_store: Source of per-project error reporting settings
            tracker_factory: Builds the tracker for a project's settings
            rate_limiter: Daily issue creation quota
            clock: Returns the current UTC time
            noise_guard_hours: Window in which a project's recent open issue
                absorbs new errors instead of a new issue being created
            comment_cooldown_hours: Minimum quiet time before commenting again
            reopen_window_days: Closed issues younger than this are reopened
            stale_days: Open issues without occurrences this long are closed
        """
        self._errors = error_store
        self._settings = settings_store
        self._trackers = tracker_factory
        self._rate_limiter = rate_limiter
        self._clock = clock
        self._noise_guard = timedelta(hours=noise_guard_hours)
        self._comment_cooldown = timedelta(hours=comment_cooldown_hours)
        self._reopen_window = timedelta(days=reopen_window_days)
        self._stale_days = stale_days

    # ========== Per-report orchestration ==========

    async def process_error(self, error_id: str) -> Optional[IssueResult]:
        """
        Create, update or reopen the tracker issue for one error report.

        Args:
            error_id: Error report ID

        Returns:
            IssueResult describing what was done, or None when the record
            does not exist or its project has no tracker configured

        Raises:
            TrackerError: If the tracker fails; transient failures are
                retried by the dispatcher
        """
        error = await self._errors.find_by_id(error_id)
        if error is None:
            logger.error(
                "Cannot orchestrate issue: error report not found",
                extra={"error_id": error_id}
            )
            return None

        settings = await self._settings.get_error_reporting_settings(error.project_id)
        if not settings.enabled or not settings.tracker_configured:
            logger.debug(
                "Issue tracker not configured, skipping orchestration",
                extra={"project_id": error.project_id, "error_id": error.id}
            )
            return None

        tracker = self._trackers.get_tracker(settings)

        result = None
        if error.issue_number is not None:
            result = await self._handle_linked_issue(tracker, error)
        if result is None:
            result = await self._handle_unlinked_error(tracker, error, settings)

        log_issue_operation(
            logger,
            project_id=error.project_id,
            error_id=error.id,
            operation=result.operation.value,
            issue_number=result.issue_number or None,
            message=result.message
        )
        emit_metric(f"issues.{result.operation.value}", 1, project_id=error.project_id)
        return result

    orchestrate = process_error

    async def _handle_linked_issue(self, tracker: IssueTracker, error: ErrorReport) -> Optional[IssueResult]:
        """Apply the open/closed rules; None means start over as unlinked."""
        try:
            issue = await tracker.get_issue(error.issue_number)
        except TrackerNotFoundError:
            logger.warning(
                f"Linked issue #{error.issue_number} no longer exists",
                extra={"error_id": error.id, "issue_number": error.issue_number}
            )
            return None

        await self._sync_local_state(error, issue)
        return await self._apply_issue_rules(tracker, error, issue)

    async def _apply_issue_rules(
        self,
        tracker: IssueTracker,
        error: ErrorReport,
        issue: TrackerIssue
    ) -> Optional[IssueResult]:
        if issue.state == IssueState.OPEN.value:
            return await self._comment_unless_recent(tracker, error, issue)

        if self._within_reopen_window(issue):
            return await self._reopen(tracker, error, issue)

        logger.info(
            f"Issue #{issue.number} closed more than {self._reopen_window.days} days ago",
            extra={"error_id": error.id, "issue_number": issue.number}
        )
        return None

    async def _handle_unlinked_error(
        self,
        tracker: IssueTracker,
        error: ErrorReport,
        settings: ErrorReportingSettings
    ) -> IssueResult:
        rate_limit = await self._rate_limiter.check(
            error.project_id, settings.rate_limit.max_issues_per_day
        )
        if not rate_limit.within_limits:
            return IssueResult(
                issue_number=0,
                issue_url="",
                operation=IssueOperation.SKIPPED,
                message=(
                    f"Rate limit exceeded: {rate_limit.issues_today}/"
                    f"{rate_limit.max_issues_per_day} issues created today"
                )
            )

        existing = await self.find_issue_by_fingerprint(tracker, error.fingerprint, settings.issue_labels)
        if existing is not None:
            result = await self._relink(tracker, error, existing)
            if result is not None:
                return result

        recent = await tracker.find_recent_open_issue(
            settings.issue_labels, self._clock() - self._noise_guard
        )
        if recent is not None:
            return await self._attach_to_recent_issue(tracker, error, recent)

        return await self._create_issue(tracker, error, settings)

    async def find_issue_by_fingerprint(
        self,
        tracker: IssueTracker,
        fingerprint: str,
        labels: List[str]
    ) -> Optional[TrackerIssue]:
        """
        Search the tracker for an issue created for this fingerprint.

        Only issues whose body marker equals the fingerprint exactly count;
        an open match wins over closed ones.
        """
        candidates = await tracker.search_issues(text=fingerprint, labels=labels, sort="updated", limit=10)
        matches = [issue for issue in candidates if extract_fingerprint(issue.body) == fingerprint]
        if not matches:
            return None

        for issue in matches:
            if issue.state == IssueState.OPEN.value:
                return issue
        return matches[0]

    async def _relink(self, tracker: IssueTracker, error: ErrorReport, issue: TrackerIssue) -> Optional[IssueResult]:
        if issue.state != IssueState.OPEN.value and not self._within_reopen_window(issue):
            return None

        await self._errors.link_issue(error.id, issue.number, IssueState(issue.state))
        logger.info(
            f"Relinked existing issue #{issue.number} by fingerprint",
            extra={"error_id": error.id, "issue_number": issue.number, "fingerprint": error.fingerprint}
        )
        return await self._apply_issue_rules(tracker, error, issue)

    async def _attach_to_recent_issue(
        self,
        tracker: IssueTracker,
        error: ErrorReport,
        issue: TrackerIssue
    ) -> IssueResult:
        await self._errors.link_issue(error.id, issue.number, IssueState.OPEN)

        if self._updated_recently(issue):
            return IssueResult(
                issue_number=issue.number,
                issue_url=issue.html_url,
                operation=IssueOperation.SKIPPED,
                message="Linked to existing recent issue (noise guard), issue updated recently"
            )

        await tracker.add_comment(issue.number, generate_occurrence_comment(error, self._clock()))
        return IssueResult(
            issue_number=issue.number,
            issue_url=issue.html_url,
            operation=IssueOperation.UPDATED,
            message="Added to existing recent issue (noise guard)"
        )

    async def _create_issue(
        self,
        tracker: IssueTracker,
        error: ErrorReport,
        settings: ErrorReportingSettings
    ) -> IssueResult:
        issue = await tracker.create_issue(
            title=generate_issue_title(error),
            body=generate_issue_body(error),
            labels=list(settings.issue_labels)
        )
        await self._rate_limiter.record_creation(error.project_id)
        await self._errors.link_issue(error.id, issue.number, IssueState.OPEN)

        return IssueResult(
            issue_number=issue.number,
            issue_url=issue.html_url,
            operation=IssueOperation.CREATED
        )

    async def _comment_unless_recent(
        self,
        tracker: IssueTracker,
        error: ErrorReport,
        issue: TrackerIssue
    ) -> IssueResult:
        if self._updated_recently(issue):
            return IssueResult(
                issue_number=issue.number,
                issue_url=issue.html_url,
                operation=IssueOperation.SKIPPED,
                message="Issue updated recently"
            )

        await tracker.add_comment(issue.number, generate_occurrence_comment(error, self._clock()))
        return IssueResult(
            issue_number=issue.number,
            issue_url=issue.html_url,
            operation=IssueOperation.UPDATED
        )

    async def _reopen(self, tracker: IssueTracker, error: ErrorReport, issue: TrackerIssue) -> IssueResult:
        await tracker.update_issue_state(issue.number, IssueState.OPEN.value)
        await tracker.add_comment(issue.number, generate_reopen_comment(error, self._clock()))
        await self._errors.update_issue_state(error.id, IssueState.OPEN)

        return IssueResult(
            issue_number=issue.number,
            issue_url=issue.html_url,
            operation=IssueOperation.REOPENED
        )

    async def _sync_local_state(self, error: ErrorReport, issue: TrackerIssue) -> None:
        if issue.state == error.issue_state.value:
            return

        logger.info(
            f"Issue state changed on tracker: {error.issue_state.value} -> {issue.state}",
            extra={"error_id": error.id, "issue_number": issue.number}
        )
        await self._errors.update_issue_state(error.id, IssueState(issue.state))

    def _updated_recently(self, issue: TrackerIssue) -> bool:
        return self._clock() - issue.updated_at < self._comment_cooldown

    def _within_reopen_window(self, issue: TrackerIssue) -> bool:
        closed_at = issue.closed_at or issue.updated_at
        return self._clock() - closed_at <= self._reopen_window

    # ========== Sweeps ==========

    async def process_pending_errors(self, project_id: str) -> List[IssueResult]:
        """
        Create issues for records that reached the occurrence threshold.

        Records are handled most frequent first; the sweep stops once the
        daily quota is used up.

        Args:
            project_id: Project ID

        Returns:
            Results of the records that were processed
        """
        results, _ = await self._process_pending(project_id)
        return results

    async def _process_pending(self, project_id: str) -> Tuple[List[IssueResult], SweepResult]:
        operation = "process_pending_errors"
        settings = await self._settings.get_error_reporting_settings(project_id)
        if not settings.enabled or not settings.tracker_configured:
            return [], SweepResult(operation=operation, project_id=project_id)

        pending = await self._errors.find_pending_issue_creation(
            project_id, settings.filters.min_occurrences
        )

        metrics = SweepMetrics(operation, project_id)
        metrics.start()
        results: List[IssueResult] = []

        for error in pending:
            try:
                result = await self.process_error(error.id)
                if result is not None:
                    results.append(result)
                metrics.record_success()
            except Exception as e:
                log_error_with_context(
                    logger,
                    "Failed to process pending error",
                    e,
                    project_id=project_id,
                    error_id=error.id
                )
                metrics.record_failure(f"{error.id}: {e}")

            rate_limit = await self._rate_limiter.check(project_id, settings.rate_limit.max_issues_per_day)
            if not rate_limit.within_limits:
                logger.info(
                    "Daily issue quota reached, stopping pending sweep",
                    extra={"project_id": project_id}
                )
                break

        return results, self._finish_sweep(metrics)

    async def process_stale_issues(self, project_id: str, stale_days: Optional[int] = None) -> SweepResult:
        """
        Close open issues whose error has not recurred for ``stale_days``.

        The sweep only closes; it never reopens.

        Args:
            project_id: Project ID
            stale_days: Quiet period before closing (defaults to the
                orchestrator's configured value)

        Returns:
            SweepResult with per-item outcomes
        """
        operation = "process_stale_issues"
        settings = await self._settings.get_error_reporting_settings(project_id)
        if not settings.enabled or not settings.tracker_configured:
            return SweepResult(operation=operation, project_id=project_id)

        stale_days = stale_days if stale_days is not None else self._stale_days
        stale_before = self._clock() - timedelta(days=stale_days)
        stale_errors = await self._errors.find_stale_issues(project_id, stale_before)
        tracker = self._trackers.get_tracker(settings)

        metrics = SweepMetrics(operation, project_id)
        metrics.start()

        for error in stale_errors:
            if error.issue_number is None:
                continue

            try:
                await self._close_stale_issue(tracker, error, stale_days)
                metrics.record_success()
            except Exception as e:
                log_error_with_context(
                    logger,
                    f"Failed to close stale issue #{error.issue_number}",
                    e,
                    project_id=project_id,
                    error_id=error.id,
                    issue_number=error.issue_number
                )
                metrics.record_failure(f"#{error.issue_number}: {e}")

        return self._finish_sweep(metrics)

    async def _close_stale_issue(self, tracker: IssueTracker, error: ErrorReport, stale_days: int) -> None:
        try:
            await tracker.update_issue_state(error.issue_number, IssueState.CLOSED.value)
        except TrackerNotFoundError:
            logger.warning(
                f"Stale issue #{error.issue_number} no longer exists, marking closed",
                extra={"error_id": error.id, "issue_number": error.issue_number}
            )
        else:
            await tracker.add_comment(error.issue_number, generate_auto_close_comment(stale_days, self._clock()))

        await self._errors.update_issue_state(error.id, IssueState.CLOSED)
        log_issue_operation(
            logger,
            project_id=error.project_id,
            error_id=error.id,
            operation="closed",
            issue_number=error.issue_number,
            message=f"No occurrences in {stale_days} days"
        )

    async def sweep_project(self, project_id: str) -> List[SweepResult]:
        """Run the pending creation and stale close sweeps for a project."""
        _, pending = await self._process_pending(project_id)
        stale = await self.process_stale_issues(project_id)
        return [pending, stale]

    async def sweep_all_projects(self) -> List[SweepResult]:
        """
        Sweep every project with error reporting enabled.

        A failing project is logged and skipped.
        """
        project_ids = await self._settings.list_enabled_project_ids()
        results: List[SweepResult] = []

        for project_id in project_ids:
            try:
                results.extend(await self.sweep_project(project_id))
            except Exception as e:
                log_error_with_context(logger, "Project sweep failed", e, project_id=project_id)

        logger.info(f"Swept {len(project_ids)} projects")
        return results

    @staticmethod
    def _finish_sweep(metrics: SweepMetrics) -> SweepResult:
        metrics.complete("partial" if metrics.failed else "completed")
        handle_partial_failure(
            metrics.operation,
            total_items=metrics.processed,
            successful_items=metrics.succeeded,
            errors=metrics.errors,
            project_id=metrics.project_id
        )
        return SweepResult(
            operation=metrics.operation,
            project_id=metrics.project_id,
            processed=metrics.processed,
            succeeded=metrics.succeeded,
            failed=metrics.failed,
            errors=list(metrics.errors)
        )
