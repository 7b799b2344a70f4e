"""APScheduler setup for the reconciliation sweep and housekeeping."""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import delete

from config import settings
from models.job_execution import utcnow

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None

RECONCILE_JOB_ID = "reconcile_executions"
CLEANUP_JOB_ID = "cleanup_job_runs"


class JobRunRecorder:
    """Handle yielded by track_job_run; set counts before the block exits."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.records_processed: Optional[int] = None
        self.error_count: Optional[int] = None

    @property
    def prefix(self) -> str:
        return f"[{self.run_id[:8]}]"


@asynccontextmanager
async def track_job_run(job_id: str):
    """Context manager to track a scheduled job run in the database.

    Creates a JobRun record on entry and updates it on exit with
    success/failure status. Generates a UUID for log correlation.

    Usage:
        async with track_job_run("reconcile_executions") as run:
            run.records_processed = ...
    """
    from database import async_session_maker
    from models.job_run import JobRun

    run = JobRunRecorder(str(uuid.uuid4()))
    job_run = JobRun(job_id=job_id, run_id=run.run_id, started_at=utcnow())

    async with async_session_maker() as session:
        session.add(job_run)
        await session.commit()

    logger.debug(f"{run.prefix} Starting {job_id}")
    try:
        yield run
    except Exception as e:
        try:
            async with async_session_maker() as session:
                stored = await session.get(JobRun, job_run.id)
                stored.mark_failed(str(e)[:500])  # Truncate long errors
                await session.commit()
        except Exception as db_err:
            logger.error(f"Failed to record job failure: {db_err}")

        logger.error(f"{run.prefix} Failed {job_id}: {e}")
        raise

    async with async_session_maker() as session:
        stored = await session.get(JobRun, job_run.id)
        stored.mark_success(run.records_processed, run.error_count)
        await session.commit()

    logger.debug(f"{run.prefix} Completed {job_id}")


async def reconcile_executions_job():
    """Job: one reconciliation sweep over pending and running executions."""
    from services.engine import get_orchestrator

    async with track_job_run(RECONCILE_JOB_ID) as run:
        result = await get_orchestrator().reconciler.sweep()
        run.records_processed = result.examined
        run.error_count = result.errors

        if result.examined:
            summary = ", ".join(f"{k}={v}" for k, v in sorted(result.outcomes.items()))
            logger.info(
                f"{run.prefix} Sweep examined {result.examined} executions "
                f"({summary}; errors={result.errors})"
            )


async def cleanup_job_runs_job():
    """Job: prune scheduler history past the retention window.

    Job executions themselves are never deleted.
    """
    from database import async_session_maker
    from models.job_run import JobRun

    async with track_job_run(CLEANUP_JOB_ID) as run:
        cutoff = utcnow() - timedelta(days=settings.job_run_retention_days)

        async with async_session_maker() as session:
            result = await session.execute(
                delete(JobRun)
                .where(JobRun.started_at < cutoff)
                .where(JobRun.status != "running")
            )
            await session.commit()

        run.records_processed = result.rowcount
        logger.info(
            f"{run.prefix} Removed {result.rowcount} job runs older than "
            f"{settings.job_run_retention_days}d"
        )


async def start_scheduler():
    """Initialize and start the scheduler."""
    global scheduler

    scheduler = AsyncIOScheduler()

    interval = settings.polling_interval_seconds

    # Sweeps never overlap: a tick that fires while one is still running
    # is dropped, and missed ticks collapse into one
    scheduler.add_job(
        reconcile_executions_job,
        IntervalTrigger(seconds=interval),
        id=RECONCILE_JOB_ID,
        name="Reconcile pending and running job executions",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    # Cleanup job - runs daily
    scheduler.add_job(
        cleanup_job_runs_job,
        IntervalTrigger(days=1),
        id=CLEANUP_JOB_ID,
        name="Remove old job run history",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started with {interval} second polling interval")


async def stop_scheduler():
    """Stop the scheduler.

    No new ticks are started; a sweep already in flight finishes on its own,
    bounded by the per-call HTTP timeout.
    """
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Scheduler stopped")


def is_running() -> bool:
    return scheduler is not None and scheduler.running
