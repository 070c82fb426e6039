"""
Daily issue creation quota per project.

Counters are bucketed by UTC day in Redis and incremented atomically after
each successful creation. Comments and reopens never touch the quota.
"""

from datetime import datetime, timezone
from typing import Callable

from redis.exceptions import RedisError

from errorwatch.models.issue import RateLimitStatus
from errorwatch.services.redis_client import RedisClient, RedisConnectionError
from errorwatch.utils.logging import get_logger

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IssueRateLimiter:
    """Enforces ``max_issues_per_day`` on issue creation."""

    def __init__(self, redis_client: RedisClient, clock: Callable[[], datetime] = utc_now):
        self._redis = redis_client
        self._clock = clock

    def _day_bucket(self) -> str:
        return self._clock().astimezone(timezone.utc).strftime("%Y%m%d")

    async def check(self, project_id: str, max_issues_per_day: int) -> RateLimitStatus:
        """
        Report whether another issue may be created today.

        Fails open when the counter store is unreachable so a Redis outage
        does not stop issue tracking altogether.
        """
        try:
            issues_today = await self._redis.get_issue_count(project_id, self._day_bucket())
        except (RedisConnectionError, RedisError) as e:
            logger.warning(
                f"Issue rate limit unavailable, allowing creation: {e}",
                extra={"project_id": project_id}
            )
            issues_today = 0

        return RateLimitStatus(
            issues_today=issues_today,
            max_issues_per_day=max_issues_per_day,
            within_limits=issues_today < max_issues_per_day
        )

    async def record_creation(self, project_id: str) -> None:
        try:
            count = await self._redis.increment_issue_count(project_id, self._day_bucket())
            logger.debug(
                f"Issues created today: {count}",
                extra={"project_id": project_id}
            )
        except (RedisConnectionError, RedisError) as e:
            logger.warning(
                f"Failed to record issue creation: {e}",
                extra={"project_id": project_id}
            )
