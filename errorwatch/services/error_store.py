"""
Persistence for deduplicated error reports.

ErrorReportStore is the storage contract the intake engine and issue
orchestrator depend on. MySQLErrorReportStore implements it on the
``error_reports`` table, where the deduplication upsert is a single
``INSERT ... ON DUPLICATE KEY UPDATE`` statement so concurrent reports with
the same fingerprint never lose increments.
"""

import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiomysql

from errorwatch.models.error_report import (
    ErrorReport,
    IncomingErrorReport,
    IssueState,
    ListErrorReportsParams,
    ListErrorReportsResult,
    ProjectErrorStats,
)
from errorwatch.services.database import Database, from_db_datetime, to_db_datetime
from errorwatch.utils.logging import get_logger

logger = get_logger(__name__)

# MySQL reports 1 affected row for an insert and 2 for an update
_INSERTED_ROWCOUNT = 1


class ErrorReportStore(ABC):
    """Storage contract for deduplicated error reports."""

    @abstractmethod
    async def upsert(
        self,
        project_id: str,
        fingerprint: str,
        report: IncomingErrorReport,
        seen_at: datetime
    ) -> Tuple[ErrorReport, bool]:
        """
        Insert a new record or count another occurrence of an existing one.

        Must be atomic at the storage layer. On conflict the occurrence count
        is incremented, last_seen_at moves forward to ``seen_at`` (never
        backward), and stack trace, environment and metadata are replaced
        only when the new report supplies them.

        Returns:
            Tuple of (record after the write, whether it was inserted)
        """
        pass

    @abstractmethod
    async def find_by_id(self, error_id: str) -> Optional[ErrorReport]:
        pass

    @abstractmethod
    async def find_by_fingerprint(self, project_id: str, fingerprint: str) -> Optional[ErrorReport]:
        pass

    @abstractmethod
    async def list(self, params: ListErrorReportsParams) -> ListErrorReportsResult:
        pass

    @abstractmethod
    async def link_issue(
        self,
        error_id: str,
        issue_number: int,
        state: IssueState = IssueState.OPEN
    ) -> Optional[ErrorReport]:
        """Attach a tracker issue to a record; returns None if the record is gone."""
        pass

    @abstractmethod
    async def update_issue_state(self, error_id: str, state: IssueState) -> bool:
        """Set the linked issue state; returns False if the record is gone."""
        pass

    @abstractmethod
    async def find_pending_issue_creation(self, project_id: str, min_occurrences: int = 1) -> List[ErrorReport]:
        """Records without an issue that meet the occurrence threshold."""
        pass

    @abstractmethod
    async def find_stale_issues(self, project_id: str, stale_before: datetime) -> List[ErrorReport]:
        """Records with an open issue whose last occurrence is at or before ``stale_before``."""
        pass

    @abstractmethod
    async def get_project_stats(self, project_id: str) -> ProjectErrorStats:
        pass

    @abstractmethod
    async def count_by_project(self, project_id: str) -> int:
        pass


def _encode_json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _decode_json(value: Any) -> Optional[Dict[str, Any]]:
    if value is None or isinstance(value, dict):
        return value
    return json.loads(value)


class MySQLErrorReportStore(ErrorReportStore):
    """ErrorReportStore backed by the MySQL ``error_reports`` table."""

    _ORDER_COLUMNS = {"last_seen_at", "first_seen_at", "occurrence_count"}

    def __init__(self, database: Database):
        self._db = database

    async def upsert(
        self,
        project_id: str,
        fingerprint: str,
        report: IncomingErrorReport,
        seen_at: datetime
    ) -> Tuple[ErrorReport, bool]:
        seen = to_db_datetime(seen_at)

        async with self._db.connection() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                try:
                    await cursor.execute(
                        """
                        INSERT INTO error_reports (
                            id, project_id, fingerprint, error_type, error_code, message,
                            stack_trace, url, user_id, environment, metadata,
                            occurrence_count, first_seen_at, last_seen_at
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 1, %s, %s)
                        ON DUPLICATE KEY UPDATE
                            occurrence_count = occurrence_count + 1,
                            last_seen_at = GREATEST(last_seen_at, VALUES(last_seen_at)),
                            stack_trace = COALESCE(VALUES(stack_trace), stack_trace),
                            environment = COALESCE(VALUES(environment), environment),
                            metadata = COALESCE(VALUES(metadata), metadata)
                        """,
                        (
                            str(uuid.uuid4()),
                            project_id,
                            fingerprint,
                            report.error_type.value,
                            report.error_code,
                            report.message,
                            report.stack_trace,
                            report.url,
                            report.user_id,
                            _encode_json(report.environment),
                            _encode_json(report.metadata),
                            seen,
                            seen,
                        )
                    )
                    created = cursor.rowcount == _INSERTED_ROWCOUNT

                    await cursor.execute(
                        "SELECT * FROM error_reports WHERE project_id = %s AND fingerprint = %s",
                        (project_id, fingerprint)
                    )
                    row = await cursor.fetchone()
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise

        return self._row_to_error_report(row), created

    async def find_by_id(self, error_id: str) -> Optional[ErrorReport]:
        row = await self._fetch_one(
            "SELECT * FROM error_reports WHERE id = %s LIMIT 1",
            (error_id,)
        )
        return self._row_to_error_report(row) if row else None

    async def find_by_fingerprint(self, project_id: str, fingerprint: str) -> Optional[ErrorReport]:
        row = await self._fetch_one(
            "SELECT * FROM error_reports WHERE project_id = %s AND fingerprint = %s LIMIT 1",
            (project_id, fingerprint)
        )
        return self._row_to_error_report(row) if row else None

    async def list(self, params: ListErrorReportsParams) -> ListErrorReportsResult:
        conditions = ["project_id = %s"]
        values: List[Any] = [params.project_id]

        if params.error_type is not None:
            conditions.append("error_type = %s")
            values.append(params.error_type.value)

        if params.error_code is not None:
            conditions.append("error_code = %s")
            values.append(params.error_code)

        if params.issue_state is not None:
            if params.issue_state == IssueState.NONE:
                conditions.append("issue_number IS NULL")
            else:
                conditions.append("issue_state = %s")
                values.append(params.issue_state.value)

        if params.min_occurrences is not None:
            conditions.append("occurrence_count >= %s")
            values.append(params.min_occurrences)

        if params.since is not None:
            conditions.append("last_seen_at >= %s")
            values.append(to_db_datetime(params.since))

        where_clause = " AND ".join(conditions)

        # Enum-validated, but keep the column allow-list next to the SQL
        order_by = params.order_by.value if params.order_by.value in self._ORDER_COLUMNS else "last_seen_at"
        order_dir = "ASC" if params.order_dir.value == "ASC" else "DESC"

        async with self._db.connection() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(
                    f"SELECT COUNT(*) AS count FROM error_reports WHERE {where_clause}",
                    tuple(values)
                )
                count_row = await cursor.fetchone()

                await cursor.execute(
                    f"""
                    SELECT * FROM error_reports
                    WHERE {where_clause}
                    ORDER BY {order_by} {order_dir}
                    LIMIT %s OFFSET %s
                    """,
                    tuple(values) + (params.limit, params.offset)
                )
                rows = await cursor.fetchall()

        return ListErrorReportsResult(
            errors=[self._row_to_error_report(row) for row in rows],
            total=int(count_row["count"]) if count_row else 0,
            limit=params.limit,
            offset=params.offset
        )

    async def link_issue(
        self,
        error_id: str,
        issue_number: int,
        state: IssueState = IssueState.OPEN
    ) -> Optional[ErrorReport]:
        updated = await self._execute(
            """
            UPDATE error_reports
            SET issue_number = %s, issue_state = %s
            WHERE id = %s
            """,
            (issue_number, self._state_to_db(state), error_id)
        )
        if not updated:
            logger.error(
                f"Cannot link issue #{issue_number}: error report not found",
                extra={"error_id": error_id, "issue_number": issue_number}
            )
            return None

        logger.info(
            f"Linked issue #{issue_number} to error report",
            extra={"error_id": error_id, "issue_number": issue_number}
        )
        return await self.find_by_id(error_id)

    async def update_issue_state(self, error_id: str, state: IssueState) -> bool:
        updated = await self._execute(
            "UPDATE error_reports SET issue_state = %s WHERE id = %s",
            (self._state_to_db(state), error_id)
        )
        if not updated:
            logger.error(
                f"Cannot set issue state to {state.value}: error report not found",
                extra={"error_id": error_id}
            )
        return updated

    async def find_pending_issue_creation(self, project_id: str, min_occurrences: int = 1) -> List[ErrorReport]:
        rows = await self._fetch_all(
            """
            SELECT * FROM error_reports
            WHERE project_id = %s
              AND issue_number IS NULL
              AND occurrence_count >= %s
            ORDER BY occurrence_count DESC, last_seen_at DESC
            """,
            (project_id, min_occurrences)
        )
        return [self._row_to_error_report(row) for row in rows]

    async def find_stale_issues(self, project_id: str, stale_before: datetime) -> List[ErrorReport]:
        rows = await self._fetch_all(
            """
            SELECT * FROM error_reports
            WHERE project_id = %s
              AND issue_number IS NOT NULL
              AND issue_state = 'open'
              AND last_seen_at <= %s
            ORDER BY last_seen_at ASC
            """,
            (project_id, to_db_datetime(stale_before))
        )
        return [self._row_to_error_report(row) for row in rows]

    async def get_project_stats(self, project_id: str) -> ProjectErrorStats:
        row = await self._fetch_one(
            """
            SELECT
                COUNT(*) AS total_errors,
                COALESCE(SUM(occurrence_count), 0) AS total_occurrences,
                COALESCE(SUM(error_type = 'client'), 0) AS client_errors,
                COALESCE(SUM(error_type = 'server'), 0) AS server_errors,
                COALESCE(SUM(issue_number IS NOT NULL), 0) AS with_issues,
                MAX(last_seen_at) AS last_error_at
            FROM error_reports
            WHERE project_id = %s
            """,
            (project_id,)
        )
        if not row:
            return ProjectErrorStats()

        return ProjectErrorStats(
            total_errors=int(row["total_errors"]),
            total_occurrences=int(row["total_occurrences"]),
            client_errors=int(row["client_errors"]),
            server_errors=int(row["server_errors"]),
            with_issues=int(row["with_issues"]),
            last_error_at=from_db_datetime(row["last_error_at"])
        )

    async def count_by_project(self, project_id: str) -> int:
        row = await self._fetch_one(
            "SELECT COUNT(*) AS count FROM error_reports WHERE project_id = %s",
            (project_id,)
        )
        return int(row["count"]) if row else 0

    # ========== Query helpers ==========

    async def _fetch_one(self, query: str, args: tuple) -> Optional[Dict[str, Any]]:
        async with self._db.connection() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(query, args)
                return await cursor.fetchone()

    async def _fetch_all(self, query: str, args: tuple) -> List[Dict[str, Any]]:
        async with self._db.connection() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(query, args)
                return list(await cursor.fetchall())

    async def _execute(self, query: str, args: tuple) -> bool:
        """Run a write and commit; returns whether a row matched."""
        async with self._db.connection() as conn:
            async with conn.cursor() as cursor:
                try:
                    await cursor.execute(query, args)
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise
                return cursor.rowcount > 0

    @staticmethod
    def _state_to_db(state: IssueState) -> Optional[str]:
        return None if state == IssueState.NONE else state.value

    def _row_to_error_report(self, row: Dict[str, Any]) -> ErrorReport:
        """
        Convert database row to ErrorReport model.

        Args:
            row: Database row as dictionary

        Returns:
            ErrorReport object
        """
        return ErrorReport(
            id=str(row['id']),
            project_id=str(row['project_id']),
            fingerprint=row['fingerprint'],
            error_type=row['error_type'],
            error_code=row.get('error_code'),
            message=row['message'],
            stack_trace=row.get('stack_trace'),
            url=row.get('url'),
            user_id=row.get('user_id'),
            environment=_decode_json(row.get('environment')),
            metadata=_decode_json(row.get('metadata')),
            occurrence_count=row['occurrence_count'],
            first_seen_at=from_db_datetime(row['first_seen_at']),
            last_seen_at=from_db_datetime(row['last_seen_at']),
            issue_number=row.get('issue_number'),
            issue_state=row.get('issue_state') or IssueState.NONE,
            created_at=from_db_datetime(row.get('created_at')),
            updated_at=from_db_datetime(row.get('updated_at'))
        )
