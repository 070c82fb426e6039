"""
Utility modules for errorwatch.
"""

from errorwatch.utils.logging import (
    get_logger,
    setup_logging,
    log_issue_operation,
    log_api_call,
    log_error_with_context,
)
from errorwatch.utils.metrics import (
    SweepMetrics,
    track_api_call,
    emit_metric,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "log_issue_operation",
    "log_api_call",
    "log_error_with_context",
    "SweepMetrics",
    "track_api_call",
    "emit_metric",
]
