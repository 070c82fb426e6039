"""
Read-only access to per-project error reporting settings.

Settings live as a JSON document in ``project_settings.error_reporting``.
They are edited elsewhere; this service only reads them.
"""

import json
from typing import Any, List

import aiomysql
from pydantic import ValidationError

from errorwatch.models.settings import ErrorReportingSettings
from errorwatch.services.database import Database
from errorwatch.utils.logging import get_logger

logger = get_logger(__name__)


class ProjectSettingsStore:
    """Looks up error reporting settings by project ID."""

    def __init__(self, database: Database):
        self._db = database

    async def get_error_reporting_settings(self, project_id: str) -> ErrorReportingSettings:
        """
        Get error reporting settings for a project.

        A missing row or an unreadable document yields the defaults, which
        leave reporting disabled.

        Args:
            project_id: Project ID

        Returns:
            ErrorReportingSettings
        """
        async with self._db.connection() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(
                    "SELECT error_reporting FROM project_settings WHERE project_id = %s LIMIT 1",
                    (project_id,)
                )
                row = await cursor.fetchone()

        if not row or row.get("error_reporting") is None:
            return ErrorReportingSettings()

        return self._parse_settings(project_id, row["error_reporting"])

    async def is_error_reporting_enabled(self, project_id: str) -> bool:
        settings = await self.get_error_reporting_settings(project_id)
        return settings.enabled

    async def list_enabled_project_ids(self) -> List[str]:
        """
        List projects with error reporting switched on.

        Returns:
            Project IDs
        """
        async with self._db.connection() as conn:
            async with conn.cursor() as cursor:
                await cursor.execute(
                    """
                    SELECT project_id FROM project_settings
                    WHERE JSON_EXTRACT(error_reporting, '$.enabled') = CAST('true' AS JSON)
                    ORDER BY project_id
                    """
                )
                rows = await cursor.fetchall()

        return [str(row[0]) for row in rows]

    def _parse_settings(self, project_id: str, raw: Any) -> ErrorReportingSettings:
        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
            return ErrorReportingSettings.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.error(
                f"Unreadable error reporting settings, using defaults: {e}",
                extra={"project_id": project_id}
            )
            return ErrorReportingSettings()
