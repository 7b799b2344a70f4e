"""Job execution query API (read-only)."""

from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from models.job_execution import ExecutionStatus, TargetType
from services.job_store import JobExecutionStore

router = APIRouter()


def get_store() -> JobExecutionStore:
    """Dependency for the job execution store."""
    return JobExecutionStore()


class JobExecutionResponse(BaseModel):
    """Job execution response schema."""

    id: str
    request_id: str
    target_type: str
    resource_type: Optional[str] = None
    resource_id: str
    status: str
    backend_job_id: Optional[str] = None
    backend_status: Optional[str] = None
    result_classification: Optional[str] = None
    launch_attempts: int
    next_launch_attempt_at: Optional[datetime] = None
    last_launch_error: Optional[str] = None
    polling_attempts: int
    last_polled_at: Optional[datetime] = None
    created_at: datetime
    dispatched_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    model_config = {"from_attributes": True}


class JobExecutionDetailResponse(JobExecutionResponse):
    """Single execution including the raw backend payloads."""

    form_data: Optional[str] = None
    execution_payload: Optional[str] = None
    execution_response: Optional[str] = None


class JobExecutionListResponse(BaseModel):
    """Paginated job execution list."""

    executions: List[JobExecutionResponse]
    total: int
    limit: int
    offset: int


@router.get("", response_model=JobExecutionListResponse)
async def list_job_executions(
    status: Optional[ExecutionStatus] = Query(None, description="Filter by status"),
    target_type: Optional[TargetType] = Query(None, description="Filter by backend"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    store: JobExecutionStore = Depends(get_store),
):
    """List job executions, newest first, with optional filters and pagination."""
    executions, total = await store.list_paged(
        limit=limit,
        offset=offset,
        status=status.value if status else None,
        target_type=target_type.value if target_type else None,
    )
    return JobExecutionListResponse(
        executions=[JobExecutionResponse.model_validate(e) for e in executions],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/request/{request_id}", response_model=JobExecutionDetailResponse)
async def get_job_execution_for_request(
    request_id: str,
    store: JobExecutionStore = Depends(get_store),
):
    """Get the execution created for a request."""
    execution = await store.get_by_request_id(request_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Job execution not found")
    return JobExecutionDetailResponse.model_validate(execution)


@router.get("/{execution_id}", response_model=JobExecutionDetailResponse)
async def get_job_execution(
    execution_id: str,
    store: JobExecutionStore = Depends(get_store),
):
    """Get a single job execution by ID."""
    execution = await store.get(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Job execution not found")
    return JobExecutionDetailResponse.model_validate(execution)
