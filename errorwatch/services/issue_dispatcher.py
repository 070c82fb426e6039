"""
Hand-off from error intake to issue orchestration.

Scheduling never blocks or fails the caller: the job is pushed onto the
Redis queue from a background task, and enqueue failures are only logged
and counted. The worker picks jobs up from there.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from errorwatch.services.redis_client import RedisClient
from errorwatch.utils.logging import get_logger
from errorwatch.utils.metrics import emit_metric

logger = get_logger(__name__)


def build_job(error_id: str, project_id: Optional[str] = None, attempts: int = 0) -> Dict[str, Any]:
    return {
        "error_id": error_id,
        "project_id": project_id,
        "attempts": attempts,
        "enqueued_at": datetime.now(timezone.utc).isoformat(),
    }


class IssueDispatcher:
    """Schedules issue orchestration jobs without waiting on them."""

    def __init__(self, redis_client: RedisClient, recurrence_cooldown_seconds: int = 600):
        self._redis = redis_client
        self.recurrence_cooldown_seconds = recurrence_cooldown_seconds
        self._pending: Set[asyncio.Task] = set()

    def schedule(self, error_id: str, project_id: Optional[str] = None) -> asyncio.Task:
        """
        Queue orchestration for an error report in the background.

        Must be called from a running event loop. The returned task never
        raises.

        Args:
            error_id: Error report ID
            project_id: Owning project, carried for log context
        """
        task = asyncio.create_task(self.enqueue(error_id, project_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def schedule_recurrence(self, error_id: str, project_id: Optional[str] = None) -> asyncio.Task:
        """
        Queue orchestration for another occurrence of an already linked error.

        At most one such job per error report is queued every
        ``recurrence_cooldown_seconds``.
        """
        task = asyncio.create_task(self._enqueue_recurrence(error_id, project_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _enqueue_recurrence(self, error_id: str, project_id: Optional[str]) -> bool:
        try:
            claimed = await self._redis.claim_recurrence_slot(error_id, self.recurrence_cooldown_seconds)
        except Exception as e:
            # Fail open
            logger.warning(
                f"Recurrence throttle unavailable, queueing anyway: {e}",
                extra={"error_id": error_id, "project_id": project_id}
            )
            claimed = True

        if not claimed:
            logger.debug(
                "Recurrence orchestration throttled",
                extra={"error_id": error_id, "project_id": project_id}
            )
            emit_metric("issues.recurrence_throttled", 1, project_id=project_id)
            return False

        return await self.enqueue(error_id, project_id)

    async def enqueue(self, error_id: str, project_id: Optional[str] = None, attempts: int = 0) -> bool:
        """
        Push an orchestration job onto the queue.

        Returns:
            True if the job was queued, False if the queue was unreachable
        """
        job = build_job(error_id, project_id, attempts)
        try:
            await self._redis.enqueue_issue_job(job)
        except Exception as e:
            logger.error(
                f"Failed to enqueue issue orchestration: {e}",
                extra={"error_id": error_id, "project_id": project_id}
            )
            emit_metric("issues.enqueue_failed", 1, project_id=project_id)
            return False

        logger.debug(
            "Issue orchestration queued",
            extra={"error_id": error_id, "project_id": project_id}
        )
        return True

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for scheduled enqueues to finish (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
