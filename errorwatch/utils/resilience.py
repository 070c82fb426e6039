"""
Resilience utilities for calls to the issue tracker and Redis.

This module provides:
- retry_with_backoff decorator for transient errors
- CircuitBreaker for external service calls
- handle_partial_failure for summarising batch outcomes
"""

import asyncio
import time
from typing import Callable, Any, Awaitable, Optional, TypeVar, ParamSpec, Sequence
from functools import wraps
from enum import Enum

from errorwatch.utils.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec('P')
T = TypeVar('T')


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Probing for recovery


class CircuitBreakerOpenError(Exception):
    """Raised when circuit breaker is open."""
    pass


def _backoff_delay(attempt: int, base_delay: float, max_delay: float, exponential_base: float) -> float:
    return min(base_delay * (exponential_base ** attempt), max_delay)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Decorator for retrying functions with exponential backoff.
    
    Only exceptions listed in ``exceptions`` are retried; anything else
    propagates on the first attempt.
    
    Args:
        max_retries: Maximum number of attempts (default: 3)
        base_delay: Initial delay in seconds between retries (default: 1.0)
        max_delay: Maximum delay in seconds between retries (default: 60.0)
        exponential_base: Base for exponential backoff calculation (default: 2.0)
        exceptions: Tuple of exception types to retry
    
    Example:
        @retry_with_backoff(max_retries=3, exceptions=(TrackerTransientError,))
        async def create_issue(...):
            ...
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            for attempt in range(max_retries):
                try:
                    result = await func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(
                            f"{func.__name__} succeeded on attempt {attempt + 1}/{max_retries}"
                        )
                    return result
                
                except exceptions as e:
                    if attempt == max_retries - 1:
                        logger.error(f"{func.__name__} failed after {max_retries} attempts: {e}")
                        raise
                    
                    delay = _backoff_delay(attempt, base_delay, max_delay, exponential_base)
                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt + 1}/{max_retries}: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)
            
            raise RuntimeError(f"{func.__name__} called with max_retries={max_retries}")
        
        @wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                
                except exceptions as e:
                    if attempt == max_retries - 1:
                        logger.error(f"{func.__name__} failed after {max_retries} attempts: {e}")
                        raise
                    
                    delay = _backoff_delay(attempt, base_delay, max_delay, exponential_base)
                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt + 1}/{max_retries}: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    time.sleep(delay)
            
            raise RuntimeError(f"{func.__name__} called with max_retries={max_retries}")
        
        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper
    
    return decorator


class CircuitBreaker:
    """
    Circuit breaker for external service calls.
    
    After ``failure_threshold`` consecutive failures the circuit opens and
    calls are rejected with CircuitBreakerOpenError until ``timeout``
    seconds have passed. The circuit then lets up to
    ``half_open_max_calls`` trial calls through; enough successes close it
    again, any failure reopens it.
    
    Only exceptions matching ``tracked_exceptions`` count as failures. Any other
    exception still means the service answered, so a 404 from the tracker
    counts as a success and never trips the breaker.
    """
    
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: float = 60,
        half_open_max_calls: int = 3,
        tracked_exceptions: tuple = (Exception,),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls
        self.tracked_exceptions = tracked_exceptions
        
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitState.CLOSED
        self.half_open_calls = 0
    
    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute an async callable with circuit breaker protection.
        
        Raises:
            CircuitBreakerOpenError: If circuit is open
            Exception: Any exception raised by the callable
        """
        if self.state == CircuitState.OPEN:
            if self.last_failure_time and (time.monotonic() - self.last_failure_time) > self.timeout:
                logger.info(f"Circuit breaker {self.name} transitioning to HALF_OPEN")
                self.state = CircuitState.HALF_OPEN
                self.half_open_calls = 0
                self.success_count = 0
            else:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker {self.name} is OPEN; retry after {self.timeout}s"
                )
        
        if self.state == CircuitState.HALF_OPEN:
            if self.half_open_calls >= self.half_open_max_calls:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker {self.name} is HALF_OPEN and max trial calls reached"
                )
            self.half_open_calls += 1
        
        try:
            result = await func()
        except self.tracked_exceptions:
            self._record_failure()
            raise
        except Exception:
            # The service answered; untracked errors count as a success
            self._record_success()
            raise

        self._record_success()
        return result
    
    def _record_success(self) -> None:
        self.success_count += 1
        
        if self.state == CircuitState.HALF_OPEN:
            if self.success_count >= self.half_open_max_calls:
                logger.info(f"Circuit breaker {self.name} transitioning to CLOSED (service recovered)")
                self.reset()
        else:
            self.failure_count = 0
    
    def _record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        
        if self.state == CircuitState.HALF_OPEN:
            logger.warning(f"Circuit breaker {self.name} transitioning to OPEN (service still failing)")
            self.state = CircuitState.OPEN
            self.success_count = 0
            self.half_open_calls = 0
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                f"Circuit breaker {self.name} transitioning to OPEN "
                f"(failure threshold {self.failure_threshold} reached)"
            )
            self.state = CircuitState.OPEN
            self.success_count = 0
    
    def get_state(self) -> CircuitState:
        return self.state
    
    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.last_failure_time = None


def handle_partial_failure(
    operation_name: str,
    total_items: int,
    successful_items: int,
    errors: Sequence[str],
    **context: Any
) -> None:
    """
    Log the outcome of a batch where items may fail independently.
    
    Args:
        operation_name: Name of the batch operation
        total_items: Number of items attempted
        successful_items: Number of items that succeeded
        errors: Error messages of failed items
        **context: Additional context fields (e.g. project_id)
    """
    failed_items = total_items - successful_items
    extra = {
        "operation": operation_name,
        "total_items": total_items,
        "successful_items": successful_items,
        "failed_items": failed_items,
        **context,
    }
    
    if failed_items > 0:
        extra["errors"] = list(errors[:10])
        logger.warning(
            f"Partial failure in {operation_name}: "
            f"{successful_items}/{total_items} succeeded, {failed_items} failed",
            extra=extra
        )
    else:
        logger.info(
            f"{operation_name} completed: {successful_items}/{total_items}",
            extra=extra
        )


def create_tracker_circuit_breaker(tracked_exceptions: tuple = (Exception,)) -> CircuitBreaker:
    """Create circuit breaker configured for issue tracker API calls."""
    return CircuitBreaker(
        name="issue_tracker",
        failure_threshold=5,
        timeout=60,
        half_open_max_calls=2,
        tracked_exceptions=tracked_exceptions,
    )
