"""
Error intake and error listing REST API endpoints.

Authentication happens upstream: the gateway resolves the caller's API key
and forwards the owning project in the ``X-Project-Id`` header.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from errorwatch.exceptions import ErrorFilteredError, ReportingDisabledError
from errorwatch.models.api_response import BatchReportItem, BatchReportResponse, ReportErrorResponse
from errorwatch.models.error_report import (
    ErrorReport,
    ErrorReportResult,
    ErrorType,
    IncomingErrorReport,
    IssueState,
    ListErrorReportsParams,
    ListErrorReportsResult,
    OrderBy,
    OrderDirection,
    ProjectErrorStats,
)
from errorwatch.services.error_reporting import ErrorReportingService
from errorwatch.services.issue_dispatcher import IssueDispatcher
from errorwatch.utils.logging import get_logger

logger = get_logger(__name__)

MAX_BATCH_SIZE = 50

router = APIRouter(prefix="/api/errors", tags=["errors"])
project_router = APIRouter(prefix="/api/projects/{project_id}/errors", tags=["errors"])


def get_error_reporting_service(request: Request) -> ErrorReportingService:
    return request.app.state.error_reporting


def get_dispatcher(request: Request) -> IssueDispatcher:
    return request.app.state.dispatcher


async def require_project_id(x_project_id: Optional[str] = Header(None)) -> str:
    """
    Read the project resolved by the upstream gateway.

    Raises:
        HTTPException: If the header is missing
    """
    if not x_project_id:
        raise HTTPException(status_code=401, detail="Project authentication required")
    return x_project_id


def _schedule_orchestration(dispatcher: IssueDispatcher, result: ErrorReportResult) -> None:
    if result.should_create_issue:
        dispatcher.schedule(result.error.id, result.error.project_id)
    elif result.error.issue_number is not None:
        # Recurrence of a linked record, throttled per record
        dispatcher.schedule_recurrence(result.error.id, result.error.project_id)


@router.post("", response_model=ReportErrorResponse, status_code=201)
async def report_error(
    payload: Dict[str, Any] = Body(...),
    project_id: str = Depends(require_project_id),
    service: ErrorReportingService = Depends(get_error_reporting_service),
    dispatcher: IssueDispatcher = Depends(get_dispatcher)
):
    """
    Report a single error.

    Returns 201 for a new error, 200 for another occurrence of a known one
    and 200 with ``filtered`` when project filters drop it.

    Raises:
        HTTPException: 400 for an invalid report, 403 when reporting is
            disabled for the project
    """
    try:
        report = IncomingErrorReport.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Invalid error report: {e}", extra={"project_id": project_id})
        raise HTTPException(status_code=400, detail="Invalid error report: error_type and message are required")

    try:
        result = await service.process_error(project_id, report)
    except ReportingDisabledError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ErrorFilteredError:
        return JSONResponse(status_code=200, content={"ok": True, "filtered": True})
    except Exception as e:
        logger.error(f"Error reporting error: {e}", extra={"project_id": project_id}, exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to report error")

    _schedule_orchestration(dispatcher, result)

    response = ReportErrorResponse(
        ok=True,
        error_id=result.error.id,
        is_new=result.is_new,
        occurrence_count=result.error.occurrence_count
    )
    return JSONResponse(
        status_code=201 if result.is_new else 200,
        content=response.model_dump(exclude_none=True)
    )


@router.post("/batch", response_model=BatchReportResponse)
async def report_batch(
    errors: List[Dict[str, Any]] = Body(..., embed=True),
    project_id: str = Depends(require_project_id),
    service: ErrorReportingService = Depends(get_error_reporting_service),
    dispatcher: IssueDispatcher = Depends(get_dispatcher)
) -> BatchReportResponse:
    """
    Report up to 50 errors at once.

    Invalid and filtered reports are counted as skipped; they never fail
    the batch.
    """
    if not errors:
        raise HTTPException(status_code=400, detail="errors must be a non-empty array")
    if len(errors) > MAX_BATCH_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"Batch size exceeds maximum of {MAX_BATCH_SIZE} errors"
        )

    if not await service.is_enabled(project_id):
        raise HTTPException(status_code=403, detail=str(ReportingDisabledError(project_id)))

    results: List[BatchReportItem] = []
    skipped = 0

    for payload in errors:
        try:
            report = IncomingErrorReport.model_validate(payload)
            result = await service.process_error(project_id, report)
        except (ValidationError, ErrorFilteredError, ReportingDisabledError):
            skipped += 1
            continue
        except Exception as e:
            logger.error(f"Error reporting batch item: {e}", extra={"project_id": project_id}, exc_info=True)
            skipped += 1
            continue

        _schedule_orchestration(dispatcher, result)
        results.append(BatchReportItem(
            error_id=result.error.id,
            is_new=result.is_new,
            occurrence_count=result.error.occurrence_count
        ))

    return BatchReportResponse(ok=True, processed=len(results), skipped=skipped, results=results)


@project_router.get("", response_model=ListErrorReportsResult)
async def list_errors(
    project_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    error_type: Optional[ErrorType] = None,
    error_code: Optional[str] = None,
    issue_state: Optional[IssueState] = None,
    min_occurrences: Optional[int] = Query(None, ge=1),
    since: Optional[datetime] = None,
    order_by: OrderBy = OrderBy.LAST_SEEN_AT,
    order_dir: OrderDirection = OrderDirection.DESC,
    service: ErrorReportingService = Depends(get_error_reporting_service)
) -> ListErrorReportsResult:
    """List a project's deduplicated errors."""
    params = ListErrorReportsParams(
        project_id=project_id,
        limit=limit,
        offset=offset,
        error_type=error_type,
        error_code=error_code,
        issue_state=issue_state,
        min_occurrences=min_occurrences,
        since=since,
        order_by=order_by,
        order_dir=order_dir,
    )
    return await service.list_errors(params)


@project_router.get("/stats", response_model=ProjectErrorStats)
async def get_stats(
    project_id: str,
    service: ErrorReportingService = Depends(get_error_reporting_service)
) -> ProjectErrorStats:
    return await service.get_project_stats(project_id)


@project_router.get("/{error_id}", response_model=ErrorReport)
async def get_error(
    project_id: str,
    error_id: str,
    service: ErrorReportingService = Depends(get_error_reporting_service)
) -> ErrorReport:
    error = await service.get_error(error_id, project_id)
    if error is None:
        raise HTTPException(status_code=404, detail="Error not found")
    return error
