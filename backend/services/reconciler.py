"""Polling reconciliation: one sweep over every active job execution.

Each sweep loads all pending and running executions and handles them
independently:

- pending and due -> one launch attempt through the Dispatcher
- running         -> poll the backend, map the raw status, advance

Polling rules:
- every poll counts toward polling_attempts, including polls that fail
  for any reason, so an unreachable or misbehaving backend still times
  the execution out
- a still-running execution that reaches max_polling_attempts is failed
  with a polling timeout
- a completed OO flow also needs its result classification; until OO
  reports one the execution stays running, and an ERROR result fails it

A failure while handling one execution is logged and counted; it never
stops the rest of the sweep.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from config import settings
from errors import ExecutionClientError, InvalidTransitionError, PollingTimeoutError
from models.job_execution import (
    ExecutionStatus,
    JobExecution,
    ResultClassification,
    TargetType,
)
from services.dispatcher import Dispatcher, target_of
from services.execution_client import StatusReport
from services.job_store import JobExecutionStore
from services.status_mapping import (
    is_known_status,
    map_result_classification,
    map_status,
)
from services.status_publisher import StatusPublisher

logger = logging.getLogger(__name__)


class PollOutcome(str, enum.Enum):
    STILL_RUNNING = "still_running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    UNREACHABLE = "unreachable"  # Poll call failed; counted, no transition
    NOT_DUE = "not_due"  # Pending, waiting for its backoff to expire
    STALE = "stale"  # Row changed under us (already terminal)


@dataclass
class SweepResult:
    """Per-sweep tally of what happened to each execution."""

    examined: int = 0
    errors: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def record(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def count(self, outcome) -> int:
        return self.outcomes.get(getattr(outcome, "value", outcome), 0)


class Reconciler:
    """Advances active executions toward a terminal state."""

    def __init__(
        self,
        store: JobExecutionStore,
        dispatcher: Dispatcher,
        publisher: StatusPublisher,
        max_polling_attempts: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.max_polling_attempts = (
            max_polling_attempts if max_polling_attempts is not None
            else settings.max_polling_attempts
        )
        self.concurrency = concurrency if concurrency is not None else settings.sweep_concurrency

    @property
    def clock(self):
        return self.dispatcher.clock

    async def sweep(self) -> SweepResult:
        """Process every pending/running execution once."""
        executions = await self.store.list_active()
        result = SweepResult(examined=len(executions))
        if not executions:
            return result

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(execution: JobExecution) -> str:
            async with semaphore:
                return await self.process(execution)

        outcomes = await asyncio.gather(
            *(run(execution) for execution in executions),
            return_exceptions=True,
        )

        for execution, outcome in zip(executions, outcomes):
            if isinstance(outcome, Exception):
                result.errors += 1
                logger.error(
                    f"Sweep failed for execution {execution.id} "
                    f"(request {execution.request_id}): {outcome!r}"
                )
            else:
                result.record(outcome)

        return result

    async def process(self, execution: JobExecution) -> str:
        """Handle one execution snapshot. Returns an outcome value."""
        try:
            if execution.status == ExecutionStatus.PENDING.value:
                if not execution.launch_due(self.clock()):
                    return PollOutcome.NOT_DUE.value
                outcome = await self.dispatcher.attempt_launch(execution.id)
                return outcome.value
            if execution.status == ExecutionStatus.RUNNING.value:
                outcome = await self.poll(execution)
                return outcome.value
        except InvalidTransitionError as e:
            logger.info(f"Execution {execution.id} changed during sweep: {e}")
            return PollOutcome.STALE.value
        return PollOutcome.STALE.value

    async def poll(self, execution: JobExecution) -> PollOutcome:
        """Poll a running execution once and apply the result."""
        target = target_of(execution)

        if not execution.backend_job_id:
            return await self._finish(
                execution.id, PollOutcome.FAILED,
                error="Running execution has no backend job id",
            )

        try:
            client = self.dispatcher.client_for(target.target_type)
            report = await client.get_status(execution.backend_job_id, target)
        except ExecutionClientError as e:
            logger.warning(
                f"Status poll failed for {execution.id} "
                f"(job {execution.backend_job_id}): {e}"
            )
            return await self._record_poll(execution.id, error=f"Status poll failed: {e}")
        except Exception as e:
            # Counted like any other failed poll; the ceiling still applies
            logger.exception(
                f"Unexpected error polling {execution.id} (job {execution.backend_job_id})"
            )
            return await self._record_poll(execution.id, error=f"Status poll failed: {e!r}")

        canonical = map_status(target.target_type, report.status)
        if not is_known_status(target.target_type, report.status):
            logger.warning(
                f"Unrecognized {target.target_type.value} status {report.status!r} "
                f"for {execution.id}, treating as running"
            )
        logger.debug(
            f"Polled {execution.id} job={execution.backend_job_id} "
            f"raw={report.status} canonical={canonical.value}"
        )

        if canonical == ExecutionStatus.FAILED:
            return await self._finish(
                execution.id, PollOutcome.FAILED, report=report,
                error=f"Execution failed with status: {report.status}",
            )

        if canonical == ExecutionStatus.SUCCESS:
            if target.target_type != TargetType.OO:
                return await self._finish(execution.id, PollOutcome.SUCCEEDED, report=report)
            return await self._complete_flow(execution, client, target, report)

        return await self._record_poll(
            execution.id, backend_status=report.status, response=report.raw_response
        )

    async def _complete_flow(self, execution, client, target, report) -> PollOutcome:
        """OO reported COMPLETED: fetch and apply the result classification."""
        try:
            raw_result = await client.get_result_classification(
                execution.backend_job_id, target
            )
        except Exception as e:
            if isinstance(e, ExecutionClientError):
                logger.warning(f"Result lookup failed for {execution.id}: {e}")
            else:
                logger.exception(f"Unexpected error fetching result for {execution.id}")
            return await self._record_poll(
                execution.id,
                backend_status=report.status,
                response=report.raw_response,
                error=f"Result lookup failed: {e}",
            )

        if raw_result is None:
            # Completed but no result published yet; check again next sweep
            return await self._record_poll(
                execution.id, backend_status=report.status, response=report.raw_response
            )

        classification = map_result_classification(raw_result)
        if classification is None:
            return await self._finish(
                execution.id, PollOutcome.FAILED, report=report,
                error=f"Flow completed with result: {raw_result}",
            )

        return await self._finish(
            execution.id, PollOutcome.SUCCEEDED, report=report,
            classification=classification,
        )

    async def _record_poll(
        self,
        execution_id: str,
        backend_status: Optional[str] = None,
        response: Optional[str] = None,
        error: Optional[str] = None,
    ) -> PollOutcome:
        """Count a non-terminal poll and enforce the polling ceiling."""
        timed_out = False

        def mutate(ex: JobExecution):
            nonlocal timed_out
            now = self.clock()
            ex.record_poll(now, backend_status, response)
            if error:
                ex.error_message = error
            if ex.polling_attempts >= self.max_polling_attempts:
                ex.mark_failed(str(PollingTimeoutError(ex.polling_attempts)), now)
                timed_out = True

        updated = await self.store.update(execution_id, mutate)
        if timed_out:
            logger.warning(
                f"Execution {execution_id} timed out after "
                f"{updated.polling_attempts} polling attempts"
            )
            await self.publisher.publish(updated)
            return PollOutcome.TIMED_OUT
        return PollOutcome.UNREACHABLE if error else PollOutcome.STILL_RUNNING

    async def _finish(
        self,
        execution_id: str,
        outcome: PollOutcome,
        report: Optional[StatusReport] = None,
        error: Optional[str] = None,
        classification: Optional[ResultClassification] = None,
    ) -> PollOutcome:
        """Apply a terminal transition and publish it."""

        def mutate(ex: JobExecution):
            now = self.clock()
            if report is not None:
                ex.record_poll(now, report.status, report.raw_response)
            if outcome == PollOutcome.SUCCEEDED:
                ex.mark_succeeded(now, classification)
            else:
                ex.mark_failed(error, now)

        updated = await self.store.update(execution_id, mutate)
        logger.info(
            f"Execution {execution_id} (request {updated.request_id}) -> {updated.status}"
            + (f" [{updated.result_classification}]" if updated.result_classification else "")
        )
        await self.publisher.publish(updated)
        return outcome
