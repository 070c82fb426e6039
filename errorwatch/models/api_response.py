"""API response data models."""

from typing import List, Optional

from pydantic import BaseModel


class ReportErrorResponse(BaseModel):
    """Response to a single error submission."""

    ok: bool
    error_id: Optional[str] = None
    is_new: Optional[bool] = None
    occurrence_count: Optional[int] = None
    filtered: Optional[bool] = None


class BatchReportItem(BaseModel):
    """Per-report entry of a batch response."""

    error_id: str
    is_new: bool
    occurrence_count: int


class BatchReportResponse(BaseModel):
    """Response to a batch error submission."""

    ok: bool
    processed: int
    skipped: int
    results: List[BatchReportItem] = []


class SweepResult(BaseModel):
    """Result of a project sweep over many error reports."""

    operation: str
    project_id: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = []
