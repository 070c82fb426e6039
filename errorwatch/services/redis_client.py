"""
Redis client wrapper for issue orchestration state.

This service provides Redis operations for:
- The orchestration job queue (list) and its dead-letter list
- Per-project, per-day issue creation counters (string + INCR)

Includes connection pooling and retry logic for resilience.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError, ConnectionError, TimeoutError

from errorwatch.utils.logging import get_logger

logger = get_logger(__name__)


class RedisConnectionError(Exception):
    """Raised when Redis connection fails after retries."""
    pass


class RedisClient:
    """
    Redis client wrapper with connection pooling and retry logic.

    Provides methods for:
    - Orchestration job queue operations (list push/pop)
    - Daily issue creation counters
    - Recurrence throttle keys
    """

    ISSUE_JOB_QUEUE_KEY = "job_queue:issue_orchestration"
    DEAD_LETTER_KEY = "job_queue:issue_orchestration:dead"
    ISSUE_COUNTER_PREFIX = "issue_rate:{project_id}:{day}"
    ISSUE_COUNTER_TTL_SECONDS = 2 * 24 * 60 * 60
    RECURRENCE_COOLDOWN_PREFIX = "issue_recurrence:{error_id}"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        connection_timeout: int = 5,
        socket_timeout: float = 30.0
    ):
        """
        Initialize Redis client.

        Args:
            redis_url: Redis connection URL. If None, will load from settings.
            max_retries: Maximum number of attempts for transient errors
            retry_delay: Base delay between retries (exponential backoff)
            connection_timeout: Connection timeout in seconds
            socket_timeout: Read timeout in seconds; blocking pops wait less than this
        """
        self._redis_url = redis_url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._connection_timeout = connection_timeout
        self._socket_timeout = socket_timeout

    async def initialize(self) -> None:
        """
        Initialize Redis connection pool.

        Should be called during application startup.

        Raises:
            RedisConnectionError: If the initial ping fails
        """
        try:
            if not self._redis_url:
                from errorwatch.config import settings
                self._redis_url = settings.redis_url

            self._pool = ConnectionPool.from_url(
                self._redis_url,
                max_connections=20,
                decode_responses=True,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._connection_timeout
            )
            self._client = redis.Redis(connection_pool=self._pool)

            await self._client.ping()

            logger.info("Redis connection pool initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize Redis connection pool: {e}")
            raise RedisConnectionError(f"Failed to connect to Redis: {e}")

    async def close(self) -> None:
        """
        Close Redis connection pool.

        Should be called during application shutdown.
        """
        if self._client:
            await self._client.aclose()
            self._client = None

        if self._pool:
            await self._pool.disconnect()
            self._pool = None

        logger.info("Redis connection pool closed")

    @asynccontextmanager
    async def _get_client(self):
        """
        Get Redis client with connection check.

        Raises:
            RuntimeError: If client not initialized
        """
        if not self._client:
            raise RuntimeError("Redis client not initialized. Call initialize() first.")

        yield self._client

    async def _retry_operation(self, operation, *args, **kwargs):
        """
        Execute Redis operation with retry logic.

        Connection errors and timeouts are retried with exponential backoff;
        other Redis errors propagate immediately.

        Raises:
            RedisConnectionError: If operation fails after all retries
        """
        last_error = None

        for attempt in range(self._max_retries):
            try:
                return await operation(*args, **kwargs)

            except (ConnectionError, TimeoutError) as e:
                last_error = e
                if attempt < self._max_retries - 1:
                    delay = self._retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Redis operation failed (attempt {attempt + 1}/{self._max_retries}), "
                        f"retrying in {delay}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Redis operation failed after {self._max_retries} attempts: {e}")

            except RedisError as e:
                logger.error(f"Redis operation failed with non-transient error: {e}")
                raise

        raise RedisConnectionError(f"Redis operation failed after {self._max_retries} retries: {last_error}")

    # ========== Orchestration Job Queue (List) ==========

    async def enqueue_issue_job(self, job: Dict[str, Any]) -> None:
        """
        Push an orchestration job onto the queue.

        Args:
            job: JSON-serializable job payload

        Raises:
            RedisConnectionError: If operation fails after retries
        """
        async def _enqueue():
            async with self._get_client() as client:
                await client.rpush(self.ISSUE_JOB_QUEUE_KEY, json.dumps(job))

        await self._retry_operation(_enqueue)

    async def dequeue_issue_job(self, timeout: int = 0) -> Optional[Dict[str, Any]]:
        """
        Pop the next orchestration job.

        Args:
            timeout: Blocking timeout in seconds (0 for non-blocking), kept
                below the socket timeout

        Returns:
            Job payload, or None if the queue is empty

        Raises:
            RedisConnectionError: If operation fails after retries
        """
        timeout = min(timeout, max(int(self._socket_timeout) - 1, 1))

        async def _dequeue():
            async with self._get_client() as client:
                if timeout > 0:
                    result = await client.blpop([self.ISSUE_JOB_QUEUE_KEY], timeout=timeout)
                    if not result:
                        return None
                    _, job_json = result
                else:
                    job_json = await client.lpop(self.ISSUE_JOB_QUEUE_KEY)

                if not job_json:
                    return None
                return json.loads(job_json)

        return await self._retry_operation(_dequeue)

    async def get_queue_length(self) -> int:
        async def _get_length():
            async with self._get_client() as client:
                return await client.llen(self.ISSUE_JOB_QUEUE_KEY)

        return await self._retry_operation(_get_length)

    async def push_dead_letter(self, job: Dict[str, Any]) -> None:
        """
        Park a job that exhausted its retries.

        Args:
            job: Job payload, including the last error
        """
        async def _push():
            async with self._get_client() as client:
                await client.rpush(self.DEAD_LETTER_KEY, json.dumps(job))

        await self._retry_operation(_push)

    async def get_dead_letters(self, limit: int = 100) -> List[Dict[str, Any]]:
        async def _get():
            async with self._get_client() as client:
                items = await client.lrange(self.DEAD_LETTER_KEY, 0, limit - 1)
                return [json.loads(item) for item in items]

        return await self._retry_operation(_get)

    # ========== Daily Issue Counters ==========

    def _issue_counter_key(self, project_id: str, day: str) -> str:
        return self.ISSUE_COUNTER_PREFIX.format(project_id=project_id, day=day)

    async def get_issue_count(self, project_id: str, day: str) -> int:
        """
        Read the number of issues created for a project on a UTC day.

        Args:
            project_id: Project ID
            day: Day bucket as YYYYMMDD
        """
        async def _get():
            async with self._get_client() as client:
                value = await client.get(self._issue_counter_key(project_id, day))
                return int(value) if value else 0

        return await self._retry_operation(_get)

    async def increment_issue_count(self, project_id: str, day: str) -> int:
        """
        Atomically count one more issue for a project on a UTC day.

        Returns:
            The counter value after the increment
        """
        async def _incr():
            async with self._get_client() as client:
                key = self._issue_counter_key(project_id, day)
                async with client.pipeline(transaction=True) as pipe:
                    pipe.incr(key)
                    pipe.expire(key, self.ISSUE_COUNTER_TTL_SECONDS)
                    count, _ = await pipe.execute()
                return int(count)

        return await self._retry_operation(_incr)

    # ========== Recurrence Throttle ==========

    async def claim_recurrence_slot(self, error_id: str, ttl_seconds: int) -> bool:
        """
        Claim the right to queue a recurrence job for an error report.

        Only the first claim inside ``ttl_seconds`` succeeds.

        Returns:
            True if the slot was free and is now held
        """
        async def _claim():
            async with self._get_client() as client:
                key = self.RECURRENCE_COOLDOWN_PREFIX.format(error_id=error_id)
                return bool(await client.set(key, "1", nx=True, ex=ttl_seconds))

        return await self._retry_operation(_claim)

    # ========== Utility Methods ==========

    async def ping(self) -> bool:
        """
        Test Redis connection.

        Raises:
            RedisConnectionError: If ping fails
        """
        async def _ping():
            async with self._get_client() as client:
                return await client.ping()

        return await self._retry_operation(_ping)
