"""Dispatch engine: launches pending executions on their backend.

One launch attempt is:
1. claim the row (conditional update, see JobExecutionStore.claim_for_launch)
2. build the outbound payload from the stored form data
3. call ExecutionClient.launch exactly once
4. record the outcome:
   - success: pending -> running, publish status
   - retryable failure: launch_attempts += 1, next attempt after backoff
   - permanent rejection: pending -> failed, publish status

There is no cap on launch attempts; a pending execution with a growing
launch_attempts keeps being retried at the maximum backoff.
"""

import enum
import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from config import settings
from errors import ConfigurationError, ExecutionClientError, PermanentLaunchError
from models.job_execution import JobExecution, ResourceType, TargetType, utcnow
from services.execution_client import ExecutionClient, ExecutionTarget
from services.job_store import JobExecutionStore
from services.status_publisher import StatusPublisher

logger = logging.getLogger(__name__)


class LaunchOutcome(str, enum.Enum):
    LAUNCHED = "launched"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"  # Not pending, not due, or claimed by another worker


def launch_backoff(attempts: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Delay before the next launch after ``attempts`` failed attempts.

    base, 2*base, 4*base, ... capped at max. Never decreases with attempts.
    """
    exponent = max(attempts - 1, 0)
    # Cap the exponent so huge attempt counts don't build huge ints
    delay = base_seconds * (2 ** min(exponent, 32))
    return timedelta(seconds=min(delay, max_seconds))


def target_of(execution: JobExecution) -> ExecutionTarget:
    return ExecutionTarget(
        target_type=TargetType(execution.target_type),
        resource_id=execution.resource_id,
        resource_type=(
            ResourceType(execution.resource_type) if execution.resource_type else None
        ),
    )


def build_payload(execution: JobExecution) -> dict:
    """Build the backend request body from the stored form data.

    AWX receives the form fields as extra_vars; OO receives them as flow
    inputs alongside the flow UUID.

    Raises:
        PermanentLaunchError: form data is not a JSON object.
    """
    try:
        form = json.loads(execution.form_data or "{}")
    except ValueError as e:
        raise PermanentLaunchError(f"Form data is not valid JSON: {e}") from e
    if not isinstance(form, dict):
        raise PermanentLaunchError("Form data must be a JSON object")

    if TargetType(execution.target_type) == TargetType.OO:
        return {"flowUuid": execution.resource_id, "inputs": form}
    return {"extra_vars": form}


class Dispatcher:
    """Runs launch attempts against the execution clients."""

    def __init__(
        self,
        store: JobExecutionStore,
        clients: Dict[TargetType, ExecutionClient],
        publisher: StatusPublisher,
        base_delay_seconds: Optional[int] = None,
        max_delay_seconds: Optional[int] = None,
        claim_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.clients = clients
        self.publisher = publisher
        self.base_delay_seconds = (
            base_delay_seconds if base_delay_seconds is not None
            else settings.launch_retry_base_delay_seconds
        )
        self.max_delay_seconds = (
            max_delay_seconds if max_delay_seconds is not None
            else settings.launch_retry_max_delay_seconds
        )
        self.claim_seconds = (
            claim_seconds if claim_seconds is not None
            else settings.launch_claim_seconds
        )
        self.clock = clock

    def client_for(self, target_type: TargetType) -> ExecutionClient:
        client = self.clients.get(TargetType(target_type))
        if client is None:
            raise ConfigurationError(
                f"No execution client configured for {TargetType(target_type).value}",
                setting="clients",
            )
        return client

    async def attempt_launch(self, execution_id: str) -> LaunchOutcome:
        """Make one launch attempt for a pending, due execution."""
        now = self.clock()
        lease_until = now + timedelta(seconds=self.claim_seconds)
        if not await self.store.claim_for_launch(execution_id, now, lease_until):
            logger.debug(f"Launch skipped for {execution_id}: not due or already claimed")
            return LaunchOutcome.SKIPPED

        execution = await self.store.get(execution_id)
        target = target_of(execution)

        payload_json = None
        try:
            payload = build_payload(execution)
            payload_json = json.dumps(payload)
            client = self.client_for(target.target_type)
            result = await client.launch(target, payload)
        except PermanentLaunchError as e:
            return await self._fail(execution_id, f"Launch rejected: {e}", payload_json)
        except (ExecutionClientError, ConfigurationError) as e:
            return await self._schedule_retry(execution_id, str(e), payload_json)
        except Exception as e:
            logger.exception(f"Unexpected launch error for {execution_id}")
            return await self._schedule_retry(execution_id, str(e), payload_json)

        updated = await self.store.update(
            execution_id,
            lambda ex: ex.mark_dispatched(
                result.execution_id, payload_json, result.raw_response, self.clock()
            ),
        )
        logger.info(
            f"Execution {execution_id} launched on {target.target_type.value} "
            f"as {result.execution_id} (after {updated.launch_attempts} failed attempts)"
        )
        await self.publisher.publish(updated)
        return LaunchOutcome.LAUNCHED

    async def _schedule_retry(
        self, execution_id: str, error: str, payload_json: Optional[str]
    ) -> LaunchOutcome:
        def mutate(ex: JobExecution):
            delay = launch_backoff(
                (ex.launch_attempts or 0) + 1,
                self.base_delay_seconds,
                self.max_delay_seconds,
            )
            ex.record_launch_failure(error, payload_json, self.clock() + delay)

        updated = await self.store.update(execution_id, mutate)
        logger.warning(
            f"Launch attempt {updated.launch_attempts} failed for {execution_id}: {error}. "
            f"Next attempt at {updated.next_launch_attempt_at.isoformat()}"
        )
        return LaunchOutcome.RETRY_SCHEDULED

    async def _fail(
        self, execution_id: str, error: str, payload_json: Optional[str]
    ) -> LaunchOutcome:
        def mutate(ex: JobExecution):
            if payload_json is not None:
                ex.execution_payload = payload_json
            ex.mark_failed(error, self.clock())

        updated = await self.store.update(execution_id, mutate)
        logger.error(f"Execution {execution_id} failed permanently: {error}")
        await self.publisher.publish(updated)
        return LaunchOutcome.FAILED
