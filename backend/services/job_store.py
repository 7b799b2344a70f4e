"""Durable store for job executions.

Every mutation is one short transaction against one row:

- ``create`` relies on the unique request_id index, so two deliveries of the
  same event racing each other still produce a single record.
- ``update`` re-reads the row under SELECT ... FOR UPDATE, applies the
  mutation and commits. Network calls never happen inside it.
- ``claim_for_launch`` is a conditional UPDATE that only one worker can win;
  it pushes next_launch_attempt_at forward by a lease so nobody else
  launches the same execution while the winner talks to the backend.

Objects returned by the store are detached snapshots.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, desc, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errors import DuplicateEventError, OrchestratorError
from models.job_execution import ACTIVE_STATUSES, ExecutionStatus, JobExecution

logger = logging.getLogger(__name__)


class JobExecutionNotFound(OrchestratorError):
    """No job execution with the given id."""


class JobExecutionStore:
    """Reads and atomic writes of JobExecution rows."""

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        if session_maker is None:
            from database import async_session_maker

            session_maker = async_session_maker
        self._session_maker = session_maker

    async def create(self, execution: JobExecution) -> JobExecution:
        """Insert a new execution.

        Raises:
            DuplicateEventError: an execution already exists for the request.
        """
        async with self._session_maker() as session:
            session.add(execution)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateEventError(execution.request_id) from e
        return execution

    async def get(self, execution_id: str) -> Optional[JobExecution]:
        async with self._session_maker() as session:
            return await session.get(JobExecution, execution_id)

    async def get_by_request_id(self, request_id: str) -> Optional[JobExecution]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(JobExecution).where(JobExecution.request_id == request_id)
            )
            return result.scalar_one_or_none()

    async def list_active(self) -> List[JobExecution]:
        """All pending or running executions, oldest first."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(JobExecution)
                .where(JobExecution.status.in_(ACTIVE_STATUSES))
                .order_by(JobExecution.created_at)
            )
            return list(result.scalars().all())

    async def list_paged(
        self,
        limit: int = 50,
        offset: int = 0,
        status: Optional[str] = None,
        target_type: Optional[str] = None,
    ) -> Tuple[List[JobExecution], int]:
        """Executions newest first, with the total count for the filters."""
        filters = []
        if status:
            filters.append(JobExecution.status == status)
        if target_type:
            filters.append(JobExecution.target_type == target_type)

        base_query = select(JobExecution)
        if filters:
            base_query = base_query.where(and_(*filters))

        async with self._session_maker() as session:
            total_result = await session.execute(
                select(func.count()).select_from(base_query.subquery())
            )
            total = total_result.scalar() or 0

            result = await session.execute(
                base_query.order_by(desc(JobExecution.created_at))
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all()), total

    async def count_by_status(self) -> Dict[str, int]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(JobExecution.status, func.count()).group_by(JobExecution.status)
            )
            counts = {s.value: 0 for s in ExecutionStatus}
            counts.update({status: count for status, count in result.all()})
            return counts

    async def launch_backlog(self) -> Tuple[int, Optional[datetime]]:
        """Pending executions with failed launches, and the oldest active creation time."""
        async with self._session_maker() as session:
            retrying = await session.execute(
                select(func.count())
                .select_from(JobExecution)
                .where(JobExecution.status == ExecutionStatus.PENDING.value)
                .where(JobExecution.launch_attempts > 0)
            )
            oldest = await session.execute(
                select(func.min(JobExecution.created_at)).where(
                    JobExecution.status.in_(ACTIVE_STATUSES)
                )
            )
            return retrying.scalar() or 0, oldest.scalar()

    async def claim_for_launch(
        self, execution_id: str, now: datetime, lease_until: datetime
    ) -> bool:
        """Atomically reserve a due, pending execution for one launch attempt.

        Returns True only for the caller whose conditional update matched.
        """
        async with self._session_maker() as session:
            result = await session.execute(
                update(JobExecution)
                .where(JobExecution.id == execution_id)
                .where(JobExecution.status == ExecutionStatus.PENDING.value)
                .where(
                    or_(
                        JobExecution.next_launch_attempt_at.is_(None),
                        JobExecution.next_launch_attempt_at <= now,
                    )
                )
                .values(next_launch_attempt_at=lease_until)
            )
            await session.commit()
            return result.rowcount == 1

    async def update(
        self,
        execution_id: str,
        mutate: Callable[[JobExecution], None],
    ) -> JobExecution:
        """Apply ``mutate`` to the locked row and commit.

        Exceptions raised by ``mutate`` (e.g. InvalidTransitionError) roll
        the transaction back and propagate.
        """
        async with self._session_maker() as session:
            async with session.begin():
                execution = await self._lock(session, execution_id)
                mutate(execution)
            return execution

    async def _lock(self, session: AsyncSession, execution_id: str) -> JobExecution:
        result = await session.execute(
            select(JobExecution)
            .where(JobExecution.id == execution_id)
            .with_for_update()
        )
        execution = result.scalar_one_or_none()
        if execution is None:
            raise JobExecutionNotFound(f"Job execution {execution_id} not found")
        return execution
