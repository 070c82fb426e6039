"""
In-memory stand-ins for storage, settings and the issue tracker.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

from errorwatch.exceptions import (
    TrackerNotConfiguredError,
    TrackerNotFoundError,
    TrackerTransientError,
)
from errorwatch.models.error_report import (
    ErrorReport,
    IncomingErrorReport,
    IssueState,
    ListErrorReportsParams,
    ListErrorReportsResult,
    ProjectErrorStats,
)
from errorwatch.models.issue import TrackerIssue
from errorwatch.models.settings import ErrorReportingSettings
from errorwatch.services.error_store import ErrorReportStore
from errorwatch.trackers.base import IssueTracker


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryErrorReportStore(ErrorReportStore):
    """ErrorReportStore keeping records in a dict; upsert is atomic under a lock."""

    def __init__(self):
        self.records: Dict[str, ErrorReport] = {}
        self.upsert_calls = 0
        self._lock = asyncio.Lock()

    async def upsert(
        self,
        project_id: str,
        fingerprint: str,
        report: IncomingErrorReport,
        seen_at: datetime
    ) -> Tuple[ErrorReport, bool]:
        async with self._lock:
            self.upsert_calls += 1
            existing = self._find(project_id, fingerprint)

            if existing is None:
                record = ErrorReport(
                    id=str(uuid.uuid4()),
                    project_id=project_id,
                    fingerprint=fingerprint,
                    error_type=report.error_type,
                    error_code=report.error_code,
                    message=report.message,
                    stack_trace=report.stack_trace,
                    url=report.url,
                    user_id=report.user_id,
                    environment=report.environment,
                    metadata=report.metadata,
                    occurrence_count=1,
                    first_seen_at=seen_at,
                    last_seen_at=seen_at,
                    created_at=seen_at,
                    updated_at=seen_at,
                )
                self.records[record.id] = record
                return record.model_copy(), True

            record = existing.model_copy(update={
                "occurrence_count": existing.occurrence_count + 1,
                "last_seen_at": max(existing.last_seen_at, seen_at),
                "stack_trace": report.stack_trace if report.stack_trace is not None else existing.stack_trace,
                "environment": report.environment if report.environment is not None else existing.environment,
                "metadata": report.metadata if report.metadata is not None else existing.metadata,
                "updated_at": seen_at,
            })
            self.records[record.id] = record
            return record.model_copy(), False

    def _find(self, project_id: str, fingerprint: str) -> Optional[ErrorReport]:
        for record in self.records.values():
            if record.project_id == project_id and record.fingerprint == fingerprint:
                return record
        return None

    def set_last_seen(self, error_id: str, last_seen_at: datetime) -> None:
        record = self.records[error_id]
        self.records[error_id] = record.model_copy(update={"last_seen_at": last_seen_at})

    async def find_by_id(self, error_id: str) -> Optional[ErrorReport]:
        record = self.records.get(error_id)
        return record.model_copy() if record else None

    async def find_by_fingerprint(self, project_id: str, fingerprint: str) -> Optional[ErrorReport]:
        record = self._find(project_id, fingerprint)
        return record.model_copy() if record else None

    async def list(self, params: ListErrorReportsParams) -> ListErrorReportsResult:
        records = [r for r in self.records.values() if r.project_id == params.project_id]
        if params.error_type is not None:
            records = [r for r in records if r.error_type == params.error_type]
        if params.error_code is not None:
            records = [r for r in records if r.error_code == params.error_code]
        if params.issue_state is not None:
            records = [r for r in records if r.issue_state == params.issue_state]
        if params.min_occurrences is not None:
            records = [r for r in records if r.occurrence_count >= params.min_occurrences]
        if params.since is not None:
            records = [r for r in records if r.last_seen_at >= params.since]

        records.sort(
            key=lambda r: getattr(r, params.order_by.value),
            reverse=params.order_dir.value == "DESC"
        )
        page = records[params.offset:params.offset + params.limit]
        return ListErrorReportsResult(
            errors=page,
            total=len(records),
            limit=params.limit,
            offset=params.offset
        )

    async def link_issue(
        self,
        error_id: str,
        issue_number: int,
        state: IssueState = IssueState.OPEN
    ) -> Optional[ErrorReport]:
        record = self.records.get(error_id)
        if record is None:
            return None
        record = record.model_copy(update={"issue_number": issue_number, "issue_state": state})
        self.records[error_id] = record
        return record.model_copy()

    async def update_issue_state(self, error_id: str, state: IssueState) -> bool:
        record = self.records.get(error_id)
        if record is None:
            return False
        self.records[error_id] = record.model_copy(update={"issue_state": state})
        return True

    async def find_pending_issue_creation(self, project_id: str, min_occurrences: int = 1) -> List[ErrorReport]:
        records = [
            r for r in self.records.values()
            if r.project_id == project_id
            and r.issue_number is None
            and r.occurrence_count >= min_occurrences
        ]
        return sorted(records, key=lambda r: r.occurrence_count, reverse=True)

    async def find_stale_issues(self, project_id: str, stale_before: datetime) -> List[ErrorReport]:
        return [
            r for r in self.records.values()
            if r.project_id == project_id
            and r.issue_number is not None
            and r.issue_state == IssueState.OPEN
            and r.last_seen_at <= stale_before
        ]

    async def get_project_stats(self, project_id: str) -> ProjectErrorStats:
        records = [r for r in self.records.values() if r.project_id == project_id]
        return ProjectErrorStats(
            total_errors=len(records),
            total_occurrences=sum(r.occurrence_count for r in records),
            client_errors=sum(1 for r in records if r.error_type.value == "client"),
            server_errors=sum(1 for r in records if r.error_type.value == "server"),
            with_issues=sum(1 for r in records if r.issue_number is not None),
            last_error_at=max((r.last_seen_at for r in records), default=None),
        )

    async def count_by_project(self, project_id: str) -> int:
        return sum(1 for r in self.records.values() if r.project_id == project_id)


class FakeSettingsStore:
    """Settings store backed by a dict of project settings."""

    def __init__(self, settings: Optional[Dict[str, ErrorReportingSettings]] = None):
        self.settings = dict(settings or {})

    async def get_error_reporting_settings(self, project_id: str) -> ErrorReportingSettings:
        return self.settings.get(project_id, ErrorReportingSettings())

    async def is_error_reporting_enabled(self, project_id: str) -> bool:
        return (await self.get_error_reporting_settings(project_id)).enabled

    async def list_enabled_project_ids(self) -> List[str]:
        return sorted(pid for pid, s in self.settings.items() if s.enabled)


class FakeIssueTracker(IssueTracker):
    """Issue tracker keeping issues in memory, timestamps from a FakeClock."""

    def __init__(self, clock: FakeClock, repo: str = "acme/web"):
        self.clock = clock
        self.repo = repo
        self.issues: Dict[int, TrackerIssue] = {}
        self.comments: Dict[int, List[str]] = {}
        self.calls: List[str] = []
        self.created_numbers: List[int] = []
        self.failing_issues: Set[int] = set()
        self.failure: Optional[Exception] = None
        self._next_number = 1

    def add_issue(
        self,
        body: str,
        state: str = "open",
        labels: Optional[List[str]] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        closed_at: Optional[datetime] = None,
        title: str = "Existing issue"
    ) -> TrackerIssue:
        created_at = created_at or self.clock()
        issue = TrackerIssue(
            number=self._next_number,
            title=title,
            body=body,
            state=state,
            html_url=f"https://github.com/{self.repo}/issues/{self._next_number}",
            labels=labels if labels is not None else ["bug", "auto-generated"],
            created_at=created_at,
            updated_at=updated_at or created_at,
            closed_at=closed_at,
        )
        self.issues[issue.number] = issue
        self._next_number += 1
        return issue

    def _check(self, operation: str, number: Optional[int] = None) -> None:
        self.calls.append(operation)
        if self.failure is not None:
            raise self.failure
        if number is not None and number in self.failing_issues:
            raise TrackerTransientError(f"Injected failure for #{number}", status_code=502)

    def _touch(self, number: int, **changes) -> TrackerIssue:
        issue = self.issues[number].model_copy(update={"updated_at": self.clock(), **changes})
        self.issues[number] = issue
        return issue

    @property
    def created(self) -> List[TrackerIssue]:
        return [self.issues[number] for number in self.created_numbers]

    async def create_issue(self, title: str, body: str, labels: List[str]) -> TrackerIssue:
        self._check("create_issue")
        issue = self.add_issue(body=body, labels=labels, title=title)
        self.created_numbers.append(issue.number)
        return issue

    async def get_issue(self, number: int) -> TrackerIssue:
        self._check("get_issue", number)
        if number not in self.issues:
            raise TrackerNotFoundError(f"Issue #{number} not found", status_code=404)
        return self.issues[number]

    async def update_issue_state(self, number: int, state: str) -> TrackerIssue:
        self._check("update_issue_state", number)
        if number not in self.issues:
            raise TrackerNotFoundError(f"Issue #{number} not found", status_code=404)
        closed_at = self.clock() if state == "closed" else None
        return self._touch(number, state=state, closed_at=closed_at)

    async def add_comment(self, number: int, body: str) -> None:
        self._check("add_comment", number)
        if number not in self.issues:
            raise TrackerNotFoundError(f"Issue #{number} not found", status_code=404)
        self.comments.setdefault(number, []).append(body)
        self._touch(number)

    async def search_issues(
        self,
        text: Optional[str] = None,
        labels: Optional[List[str]] = None,
        state: Optional[str] = None,
        sort: str = "updated",
        limit: int = 10
    ) -> List[TrackerIssue]:
        self._check("search_issues")
        matches = [
            issue for issue in self.issues.values()
            if (text is None or text in (issue.body or ""))
            and all(label in issue.labels for label in labels or [])
            and (state is None or issue.state == state)
        ]
        key = "created_at" if sort == "created" else "updated_at"
        matches.sort(key=lambda issue: getattr(issue, key), reverse=True)
        return matches[:limit]


class FakeTrackerFactory:
    """Hands out a single FakeIssueTracker for every configured project."""

    def __init__(self, tracker: IssueTracker):
        self.tracker = tracker

    def get_tracker(self, settings: ErrorReportingSettings) -> IssueTracker:
        if not settings.tracker_configured:
            raise TrackerNotConfiguredError("Issue tracker is not configured for this project")
        return self.tracker

    async def close(self) -> None:
        pass
