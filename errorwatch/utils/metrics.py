"""
Metrics collection and emission for observability.

Tracks:
- Sweep outcomes (processed / succeeded / failed per project)
- Issue tracker call counts and latency
- Point metrics emitted from the intake and dispatch paths
"""

import time
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from contextlib import asynccontextmanager

from errorwatch.utils.logging import get_logger, log_api_call

logger = get_logger(__name__)


class SweepMetrics:
    """
    Collects metrics during one sweep over a project's error reports.
    
    Tracks:
    - Start/end time and duration
    - Items processed, succeeded and failed
    - Tracker call counts and latency
    """
    
    def __init__(self, operation: str, project_id: str):
        self.operation = operation
        self.project_id = project_id
        
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.duration_ms: Optional[int] = None
        
        self.processed: int = 0
        self.succeeded: int = 0
        self.failed: int = 0
        self.errors: List[str] = []
        
        self.api_calls: Dict[str, int] = {}
        self.api_latencies: Dict[str, list[float]] = {}
        
        self.status: str = "running"
    
    def start(self) -> None:
        """Mark sweep start."""
        self.start_time = datetime.now(timezone.utc)
        self.status = "running"
        logger.info(
            f"Sweep {self.operation} started",
            extra={"project_id": self.project_id, "operation": self.operation}
        )
    
    def complete(self, status: str = "completed") -> None:
        """
        Mark sweep completion.
        
        Args:
            status: Final status ('completed', 'partial', 'failed')
        """
        self.end_time = datetime.now(timezone.utc)
        self.status = status
        
        if self.start_time:
            duration = (self.end_time - self.start_time).total_seconds()
            self.duration_ms = int(duration * 1000)
        
        logger.info(
            f"Sweep {self.operation} {status}",
            extra={
                "project_id": self.project_id,
                "operation": self.operation,
                "duration_ms": self.duration_ms,
                "processed": self.processed,
                "succeeded": self.succeeded,
                "failed": self.failed,
            }
        )
    
    def record_success(self) -> None:
        self.processed += 1
        self.succeeded += 1
    
    def record_failure(self, error: str) -> None:
        self.processed += 1
        self.failed += 1
        self.errors.append(error)
    
    def record_api_call(self, service: str, duration_ms: float) -> None:
        """
        Record tracker call and latency.
        
        Args:
            service: Service name (e.g., 'github')
            duration_ms: Call duration in milliseconds
        """
        self.api_calls[service] = self.api_calls.get(service, 0) + 1
        self.api_latencies.setdefault(service, []).append(duration_ms)
    
    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of collected metrics."""
        summary: Dict[str, Any] = {
            "operation": self.operation,
            "project_id": self.project_id,
            "status": self.status,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "api_calls": self.api_calls,
        }
        
        if self.api_latencies:
            latency_stats = {}
            for service, latencies in self.api_latencies.items():
                if latencies:
                    latency_stats[service] = {
                        "count": len(latencies),
                        "min_ms": round(min(latencies), 2),
                        "max_ms": round(max(latencies), 2),
                        "avg_ms": round(sum(latencies) / len(latencies), 2),
                    }
            summary["api_latencies"] = latency_stats
        
        if self.errors:
            summary["errors"] = self.errors[:10]
        
        return summary


@asynccontextmanager
async def track_api_call(
    metrics: Optional[SweepMetrics],
    service: str,
    endpoint: str,
    method: str,
    logger_adapter
):
    """
    Context manager to time one tracker call.
    
    Usage:
        async with track_api_call(None, "github", "/issues", "POST", logger):
            response = await client.post(...)
    """
    start_time = time.perf_counter()
    error = None
    
    try:
        yield
    except Exception as e:
        error = e
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        
        if metrics:
            metrics.record_api_call(service, duration_ms)
        
        log_api_call(
            logger_adapter,
            service=service,
            endpoint=endpoint,
            method=method,
            duration_ms=duration_ms,
            error=str(error) if error else None
        )


def emit_metric(metric_name: str, value: float, **tags: Any) -> None:
    """
    Emit a metric as a structured log record.
    
    Args:
        metric_name: Metric name (e.g., 'errors.ingested')
        value: Metric value
        **tags: Metric tags/labels
    """
    logger.info(
        f"Metric: {metric_name}",
        extra={
            "metric_name": metric_name,
            "metric_value": value,
            "metric_tags": tags,
        }
    )
