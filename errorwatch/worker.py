"""
Worker process for issue orchestration.

Pops orchestration jobs from the Redis queue and runs them through the
Issue Lifecycle Orchestrator, and periodically sweeps every enabled
project for pending and stale issues. Jobs for the same error report are
run one at a time; jobs failing with a transient tracker error are retried
until they run out of attempts and land on the dead-letter list.
"""

import asyncio
import signal
import sys
from typing import Any, Dict, Optional, Set

from errorwatch.config import settings
from errorwatch.exceptions import TrackerError, TrackerTransientError
from errorwatch.services.database import Database
from errorwatch.services.error_store import MySQLErrorReportStore
from errorwatch.services.issue_dispatcher import IssueDispatcher
from errorwatch.services.issue_orchestrator import IssueLifecycleOrchestrator
from errorwatch.services.rate_limiter import IssueRateLimiter
from errorwatch.services.redis_client import RedisClient
from errorwatch.services.settings_store import ProjectSettingsStore
from errorwatch.trackers.factory import IssueTrackerFactory
from errorwatch.utils.logging import setup_logging, get_logger
from errorwatch.utils.metrics import emit_metric

logger = get_logger(__name__)


class Worker:
    """Consumes the issue orchestration queue and runs periodic sweeps."""

    def __init__(
        self,
        redis_client: RedisClient,
        orchestrator: IssueLifecycleOrchestrator,
        max_workers: int = 3,
        max_job_attempts: int = 5,
        retry_delay_seconds: float = 5.0,
        sweep_interval_seconds: Optional[float] = 3600,
        poll_timeout: int = 5
    ):
        """
        Initialize the worker.

        Args:
            redis_client: Initialized Redis client holding the job queue
            orchestrator: Orchestrator that runs each job
            max_workers: Jobs processed concurrently
            max_job_attempts: Attempts before a job is dead-lettered
            retry_delay_seconds: Base backoff before a failed job is requeued
            sweep_interval_seconds: Seconds between project sweeps; None disables them
            poll_timeout: Blocking pop timeout, bounds shutdown latency
        """
        self.redis_client = redis_client
        self.orchestrator = orchestrator
        self.dispatcher = IssueDispatcher(redis_client)
        self.max_job_attempts = max_job_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.poll_timeout = poll_timeout
        self.running = False

        self._semaphore = asyncio.Semaphore(max_workers)
        self._jobs: Set[asyncio.Task] = set()
        self._retries: Set[asyncio.Task] = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """
        Start consuming jobs until stop() is called.
        """
        logger.info("Starting issue orchestration worker...")
        self.running = True

        if self.sweep_interval_seconds:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

        await self._process_jobs()

    async def stop(self) -> None:
        """
        Stop the worker gracefully.

        Running jobs are allowed to finish; retries still waiting out their
        backoff are requeued immediately.
        """
        if not self.running:
            return

        logger.info("Stopping issue orchestration worker...")
        self.running = False

        if self._sweep_task:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None

        if self._jobs:
            logger.info(f"Waiting for {len(self._jobs)} running job(s) to complete...")
            await asyncio.gather(*list(self._jobs), return_exceptions=True)

        if self._retries:
            logger.info(f"Requeueing {len(self._retries)} delayed retry job(s) now...")
            for task in list(self._retries):
                task.cancel()
            await asyncio.gather(*list(self._retries), return_exceptions=True)

        logger.info("Worker stopped")

    async def _process_jobs(self) -> None:
        """
        Main job loop.

        Blocks on the queue with a timeout so the running flag is checked
        periodically.
        """
        while self.running:
            try:
                await self._semaphore.acquire()
                try:
                    job = await self.redis_client.dequeue_issue_job(timeout=self.poll_timeout)
                except BaseException:
                    self._semaphore.release()
                    raise

                if job is None:
                    self._semaphore.release()
                    continue

                task = asyncio.create_task(self._run_job(job))
                self._jobs.add(task)
                task.add_done_callback(self._jobs.discard)

            except asyncio.CancelledError:
                logger.info("Job processing cancelled")
                break

            except Exception as e:
                logger.error(f"Error polling job queue: {e}", exc_info=True)
                await asyncio.sleep(1)

        logger.info("Job processing loop stopped")

    async def _run_job(self, job: Dict[str, Any]) -> None:
        try:
            await self.handle_job(job)
        finally:
            self._semaphore.release()

    async def handle_job(self, job: Dict[str, Any]) -> None:
        """
        Run one orchestration job.

        Args:
            job: Job payload from the queue
        """
        error_id = job.get("error_id")
        if not error_id:
            logger.error(f"Invalid job payload: {job}")
            return

        attempts = int(job.get("attempts", 0))
        project_id = job.get("project_id")

        async with self._error_lock(error_id):
            try:
                await self.orchestrator.process_error(error_id)

            except TrackerTransientError as e:
                await self._retry_or_dead_letter(job, attempts + 1, e)

            except TrackerError as e:
                logger.error(
                    f"Issue orchestration failed permanently: {e}",
                    extra={"error_id": error_id, "project_id": project_id}
                )
                emit_metric("issues.orchestration_failed", 1, project_id=project_id)

            except Exception as e:
                logger.error(
                    f"Unexpected error orchestrating issue: {e}",
                    extra={"error_id": error_id, "project_id": project_id},
                    exc_info=True
                )
                emit_metric("issues.orchestration_failed", 1, project_id=project_id)

    async def _retry_or_dead_letter(self, job: Dict[str, Any], attempts: int, error: Exception) -> None:
        error_id = job["error_id"]
        project_id = job.get("project_id")

        if attempts >= self.max_job_attempts:
            logger.error(
                f"Issue orchestration gave up after {attempts} attempts: {error}",
                extra={"error_id": error_id, "project_id": project_id}
            )
            await self.redis_client.push_dead_letter({**job, "attempts": attempts, "last_error": str(error)})
            emit_metric("issues.dead_lettered", 1, project_id=project_id)
            return

        delay = min(self.retry_delay_seconds * (2 ** (attempts - 1)), 300.0)
        logger.warning(
            f"Transient tracker failure (attempt {attempts}/{self.max_job_attempts}), "
            f"requeueing in {delay:.1f}s: {error}",
            extra={"error_id": error_id, "project_id": project_id}
        )
        task = asyncio.create_task(self._requeue_later(error_id, project_id, attempts, delay))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _requeue_later(self, error_id: str, project_id: Optional[str], attempts: int, delay: float) -> None:
        # Runs outside the job slot and the error lock; cancelling requeues at once
        try:
            await asyncio.sleep(delay)
        finally:
            await self.dispatcher.enqueue(error_id, project_id, attempts=attempts)

    def _error_lock(self, error_id: str) -> "_ErrorLock":
        return _ErrorLock(self, error_id)

    async def _sweep_loop(self) -> None:
        while self.running:
            try:
                await self.orchestrator.sweep_all_projects()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Project sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self.sweep_interval_seconds)


class _ErrorLock:
    """Per error report lock, dropped once nobody holds or waits on it."""

    def __init__(self, worker: Worker, error_id: str):
        self._worker = worker
        self._error_id = error_id

    async def __aenter__(self) -> None:
        locks = self._worker._locks
        users = self._worker._lock_users
        lock = locks.setdefault(self._error_id, asyncio.Lock())
        users[self._error_id] = users.get(self._error_id, 0) + 1
        await lock.acquire()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        locks = self._worker._locks
        users = self._worker._lock_users
        locks[self._error_id].release()
        users[self._error_id] -= 1
        if users[self._error_id] == 0:
            del users[self._error_id]
            del locks[self._error_id]


def build_worker(redis_client: RedisClient, database: Database, trackers: IssueTrackerFactory) -> Worker:
    """Wire the worker from application settings."""
    orchestrator = IssueLifecycleOrchestrator(
        error_store=MySQLErrorReportStore(database),
        settings_store=ProjectSettingsStore(database),
        tracker_factory=trackers,
        rate_limiter=IssueRateLimiter(redis_client),
        noise_guard_hours=settings.noise_guard_hours,
        comment_cooldown_hours=settings.comment_cooldown_hours,
        reopen_window_days=settings.reopen_window_days,
        stale_days=settings.stale_days,
    )
    return Worker(
        redis_client=redis_client,
        orchestrator=orchestrator,
        max_workers=settings.max_workers,
        max_job_attempts=settings.max_job_attempts,
        retry_delay_seconds=settings.job_retry_delay_seconds,
        sweep_interval_seconds=settings.sweep_interval_seconds,
    )


async def main():
    """Main entry point for the worker process."""
    setup_logging(settings.log_level.upper())
    logger.info("Worker process starting...")

    redis_client = RedisClient()
    database = Database()
    trackers = IssueTrackerFactory()
    worker: Optional[Worker] = None

    try:
        await redis_client.initialize()
        await database.initialize()
        worker = build_worker(redis_client, database, trackers)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(_shutdown(worker, s)))
        logger.info("Signal handlers registered (SIGTERM, SIGINT)")

        await worker.start()
    except Exception as e:
        logger.error(f"Worker process failed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if worker:
            await worker.stop()
        await trackers.close()
        await database.close()
        await redis_client.close()


async def _shutdown(worker: Worker, sig: signal.Signals) -> None:
    logger.info(f"Received signal {sig.name}, initiating graceful shutdown...")
    await worker.stop()


if __name__ == "__main__":
    asyncio.run(main())
