"""
Structured logging utilities with JSON formatting and context injection.

Every log line is a single JSON object on stdout. Error-lifecycle context
(project_id, error_id, fingerprint, issue_number, operation) is promoted to
top-level fields so log queries can follow one error report from intake
through tracker updates.
"""

import logging
import json
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional, MutableMapping
from logging import LogRecord


# Fields promoted to the top level of every JSON log line
CONTEXT_FIELDS = ("project_id", "error_id", "fingerprint", "issue_number", "operation")

_RESERVED_ATTRS = frozenset([
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName",
]) | frozenset(CONTEXT_FIELDS)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    
    Outputs log records as JSON with standard fields:
    - timestamp: ISO 8601 formatted timestamp
    - level: Log level
    - logger: Logger name
    - message: Log message
    - project_id / error_id / fingerprint / issue_number / operation when set
    - context: Any other extra fields
    - error: Exception details when exc_info is present
    """
    
    def format(self, record: LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)
        
        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["context"] = extra_fields
        
        if record.exc_info:
            log_data["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stack_trace": "".join(traceback.format_exception(*record.exc_info))
            }
        
        log_data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName
        }
        
        return json.dumps(log_data, default=str)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that injects context fields into all log records.
    
    Context set on the adapter (e.g. project_id) is merged into the
    ``extra`` of every call; per-call extras win on conflict.
    """
    
    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})
    
    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs
    
    def with_context(self, **context: Any) -> "ContextLoggerAdapter":
        """
        Create a new logger adapter with additional context.
        
        Args:
            **context: Additional context fields
            
        Returns:
            New logger adapter with merged context
        """
        new_extra = dict(self.extra)
        new_extra.update(context)
        return ContextLoggerAdapter(self.logger, new_extra)


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.
    
    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    formatter = JSONFormatter()
    
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)
    
    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiomysql").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str, **context: Any) -> ContextLoggerAdapter:
    """
    Get a context-aware logger for a module.
    
    Example:
        logger = get_logger(__name__, project_id="0f8e...")
        logger.info("Sweep started")  # carries project_id
    """
    return ContextLoggerAdapter(logging.getLogger(name), context)


def log_issue_operation(
    logger: logging.LoggerAdapter,
    project_id: str,
    error_id: str,
    operation: str,
    issue_number: Optional[int] = None,
    message: Optional[str] = None
) -> None:
    """
    Log the tracker operation applied to an error report.
    
    Args:
        logger: Logger to use
        project_id: Project owning the error report
        error_id: Error report ID
        operation: created, updated, reopened, skipped or closed
        issue_number: Tracker issue number, when one is involved
        message: Optional human-readable reason
    """
    extra: Dict[str, Any] = {
        "project_id": project_id,
        "error_id": error_id,
        "operation": operation,
    }
    if issue_number is not None:
        extra["issue_number"] = issue_number
    if message:
        extra["reason"] = message
    
    logger.info(f"Issue {operation} for error {error_id}", extra=extra)


def log_api_call(
    logger: logging.LoggerAdapter,
    service: str,
    endpoint: str,
    method: str,
    status_code: Optional[int] = None,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None
) -> None:
    """
    Log an outbound API call with request/response details.
    
    Args:
        logger: Logger to use
        service: Service name (e.g., 'github')
        endpoint: API endpoint
        method: HTTP method
        status_code: Response status code (if available)
        duration_ms: Request duration in milliseconds (if available)
        error: Error message (if request failed)
    """
    extra: Dict[str, Any] = {
        "service": service,
        "endpoint": endpoint,
        "method": method,
    }
    
    if status_code is not None:
        extra["status_code"] = status_code
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)
    if error is not None:
        extra["error"] = error
    
    if error:
        logger.warning(f"API call failed: {method} {endpoint}", extra=extra)
    else:
        logger.debug(f"API call: {method} {endpoint}", extra=extra)


def log_error_with_context(
    logger: logging.LoggerAdapter,
    message: str,
    error: Exception,
    **context: Any
) -> None:
    """
    Log error with full stack trace and context.
    
    Args:
        logger: Logger to use
        message: Error message
        error: Exception object
        **context: Additional context fields
    """
    context.setdefault("error_type", type(error).__name__)
    logger.error(
        f"{message}: {error}",
        extra=context,
        exc_info=(type(error), error, error.__traceback__)
    )
