"""System status and observability API.

Provides endpoints for monitoring the reconciliation loop, the event
consumer and the execution backlog. Protected by ENABLE_SYSTEM_STATUS env var.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from api.job_executions import get_store
from config import settings
from database import get_db
from jobs.scheduler import CLEANUP_JOB_ID, RECONCILE_JOB_ID
from models.job_execution import utcnow
from models.job_run import JobRun
from services.engine import current_orchestrator
from services.job_store import JobExecutionStore

router = APIRouter()


class JobStatus(BaseModel):
    """Status of a single scheduled job."""

    id: str
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None  # "running", "success", "failed"
    run_id: Optional[str] = None
    records_processed: Optional[int] = None
    error_count: Optional[int] = None
    error_message: Optional[str] = None


class SchedulerStatus(BaseModel):
    """Scheduler health status."""

    enabled: bool
    jobs: List[JobStatus]


class ConsumerStatus(BaseModel):
    enabled: bool
    queue: str
    consuming: bool = False
    processed: int = 0
    duplicates: int = 0
    rejected: int = 0


class ExecutionCounts(BaseModel):
    """Job executions by canonical status, plus launch retry backlog."""

    by_status: Dict[str, int]
    launch_retrying: int = 0  # Pending with at least one failed launch
    oldest_active_created_at: Optional[datetime] = None


class SystemStatusResponse(BaseModel):
    """Full system status response."""

    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: datetime
    scheduler: SchedulerStatus
    consumer: ConsumerStatus
    executions: ExecutionCounts


# Job IDs that we track
TRACKED_JOBS = [RECONCILE_JOB_ID, CLEANUP_JOB_ID]


async def get_job_statuses(session: AsyncSession) -> List[JobStatus]:
    """Get latest status for each tracked job type.

    Uses a subquery to efficiently get the most recent run per job_id.
    """
    subq = (
        select(JobRun.job_id, func.max(JobRun.started_at).label("max_started"))
        .where(JobRun.job_id.in_(TRACKED_JOBS))
        .group_by(JobRun.job_id)
        .subquery()
    )

    result = await session.execute(
        select(JobRun).join(
            subq,
            and_(
                JobRun.job_id == subq.c.job_id,
                JobRun.started_at == subq.c.max_started,
            ),
        )
    )

    job_runs = {jr.job_id: jr for jr in result.scalars().all()}

    statuses = []
    for job_id in TRACKED_JOBS:
        jr = job_runs.get(job_id)
        if jr:
            statuses.append(
                JobStatus(
                    id=job_id,
                    last_run=jr.started_at,
                    last_status=jr.status,
                    run_id=jr.run_id,
                    records_processed=jr.records_processed,
                    error_count=jr.error_count,
                    error_message=jr.error_message if jr.status == "failed" else None,
                )
            )
        else:
            statuses.append(JobStatus(id=job_id))

    return statuses


async def get_execution_counts(store: JobExecutionStore) -> ExecutionCounts:
    """Counts per status, and the retry backlog."""
    by_status = await store.count_by_status()
    launch_retrying, oldest_active = await store.launch_backlog()

    return ExecutionCounts(
        by_status=by_status,
        launch_retrying=launch_retrying,
        oldest_active_created_at=oldest_active,
    )


def get_consumer_status() -> ConsumerStatus:
    """Consumer flags plus this process's ingestion counters."""
    status = ConsumerStatus(
        enabled=settings.enable_consumer,
        queue=settings.request_created_queue,
    )
    orchestrator = current_orchestrator()
    if orchestrator is not None:
        consumer = orchestrator.consumer
        status.consuming = orchestrator.consuming
        status.processed = consumer.processed
        status.duplicates = consumer.duplicates
        status.rejected = consumer.rejected
    return status


def determine_health_status(
    job_statuses: List[JobStatus],
    counts: ExecutionCounts,
    now: Optional[datetime] = None,
) -> str:
    """Determine overall system health.

    Returns:
        "healthy" - Sweeps run on time and succeed
        "degraded" - Sweep is late, or launches are being retried
        "unhealthy" - Last sweep failed, or the sweep has stopped running
    """
    if not settings.enable_scheduler:
        # This worker does not sweep; nothing local to judge
        return "healthy"

    now = now or utcnow()
    sweep = next((j for j in job_statuses if j.id == RECONCILE_JOB_ID), None)
    if sweep is None or sweep.last_run is None:
        return "degraded"

    interval = timedelta(seconds=settings.polling_interval_seconds)
    sweep_age = now - sweep.last_run

    if sweep.last_status == "failed" or sweep_age > interval * 60:
        return "unhealthy"
    elif sweep_age > interval * 10 or counts.launch_retrying:
        return "degraded"
    else:
        return "healthy"


@router.get("/status", response_model=SystemStatusResponse)
async def get_system_status(
    session: AsyncSession = Depends(get_db),
    store: JobExecutionStore = Depends(get_store),
):
    """Get comprehensive system status.

    Returns sweep history, consumer configuration and execution counts.

    This endpoint is protected by the ENABLE_SYSTEM_STATUS env var.
    """
    if not settings.enable_system_status:
        raise HTTPException(
            status_code=404,
            detail="System status endpoint is disabled",
        )

    job_statuses = await get_job_statuses(session)
    counts = await get_execution_counts(store)

    return SystemStatusResponse(
        status=determine_health_status(job_statuses, counts),
        timestamp=datetime.now(timezone.utc),
        scheduler=SchedulerStatus(
            enabled=settings.enable_scheduler,
            jobs=job_statuses,
        ),
        consumer=get_consumer_status(),
        executions=counts,
    )
