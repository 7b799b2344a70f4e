"""Tests for the dispatch engine."""

import json
from datetime import timedelta

import pytest

from errors import BackendError, PermanentLaunchError, TransportError
from models.job_execution import ExecutionStatus, ResourceType, TargetType
from services.dispatcher import (
    Dispatcher,
    LaunchOutcome,
    build_payload,
    launch_backoff,
)


def test_backoff_doubles_up_to_cap():
    delays = [launch_backoff(n, 30, 960).total_seconds() for n in range(1, 9)]

    assert delays == [30, 60, 120, 240, 480, 960, 960, 960]


def test_backoff_is_monotonic_for_huge_attempt_counts():
    assert launch_backoff(10_000, 30, 960) == timedelta(seconds=960)
    assert launch_backoff(0, 30, 960) == timedelta(seconds=30)


@pytest.mark.asyncio
async def test_payload_shapes(make_execution):
    awx = await make_execution(form_data='{"hostname": "web-01"}')
    oo = await make_execution(
        target_type=TargetType.OO, resource_id="flow-uuid", form_data='{"ticket": "INC-1"}'
    )

    assert build_payload(awx) == {"extra_vars": {"hostname": "web-01"}}
    assert build_payload(oo) == {"flowUuid": "flow-uuid", "inputs": {"ticket": "INC-1"}}


@pytest.mark.asyncio
async def test_invalid_form_data_is_permanent(make_execution):
    execution = await make_execution(form_data="{not json")
    with pytest.raises(PermanentLaunchError):
        build_payload(execution)

    array = await make_execution(form_data="[1, 2]")
    with pytest.raises(PermanentLaunchError):
        build_payload(array)


@pytest.mark.asyncio
async def test_successful_launch(dispatcher, store, make_execution, awx_client, publisher, clock):
    execution = await make_execution()

    outcome = await dispatcher.attempt_launch(execution.id)

    assert outcome == LaunchOutcome.LAUNCHED
    stored = await store.get(execution.id)
    assert stored.status == ExecutionStatus.RUNNING.value
    assert stored.backend_job_id == "101"
    assert stored.dispatched_at == clock()
    assert json.loads(stored.execution_payload) == {"extra_vars": {"hostname": "web-01"}}
    assert stored.execution_response == '{"id": 101}'
    assert len(awx_client.launch_calls) == 1
    assert publisher.statuses() == ["running"]


@pytest.mark.asyncio
async def test_launch_routes_to_target_client(dispatcher, make_execution, awx_client, oo_client):
    flow = await make_execution(target_type=TargetType.OO, resource_id="flow-uuid")
    workflow = await make_execution(resource_type=ResourceType.WORKFLOW, resource_id="7")

    await dispatcher.attempt_launch(flow.id)
    await dispatcher.attempt_launch(workflow.id)

    assert len(oo_client.launch_calls) == 1
    target, payload = awx_client.launch_calls[0]
    assert target.resource_type == ResourceType.WORKFLOW
    assert target.resource_id == "7"


@pytest.mark.asyncio
async def test_transport_failure_schedules_retry(
    dispatcher, store, make_execution, awx_client, publisher, clock
):
    awx_client.launch_results = [TransportError("connection refused", backend="awx")]
    execution = await make_execution()

    outcome = await dispatcher.attempt_launch(execution.id)

    assert outcome == LaunchOutcome.RETRY_SCHEDULED
    stored = await store.get(execution.id)
    assert stored.status == ExecutionStatus.PENDING.value
    assert stored.launch_attempts == 1
    assert stored.next_launch_attempt_at == clock() + timedelta(seconds=30)
    assert "connection refused" in stored.last_launch_error
    assert stored.execution_payload is not None
    assert publisher.events == []


@pytest.mark.asyncio
async def test_backend_error_is_retryable(dispatcher, store, make_execution, awx_client):
    awx_client.launch_results = [BackendError("awx returned 503", backend="awx", status_code=503)]
    execution = await make_execution()

    assert await dispatcher.attempt_launch(execution.id) == LaunchOutcome.RETRY_SCHEDULED
    assert (await store.get(execution.id)).status == "pending"


@pytest.mark.asyncio
async def test_retry_not_attempted_before_backoff(dispatcher, make_execution, awx_client, clock):
    awx_client.launch_results = [TransportError("down", backend="awx")]
    execution = await make_execution()
    await dispatcher.attempt_launch(execution.id)

    clock.advance(29)
    assert await dispatcher.attempt_launch(execution.id) == LaunchOutcome.SKIPPED
    assert len(awx_client.launch_calls) == 1

    clock.advance(1)
    assert await dispatcher.attempt_launch(execution.id) == LaunchOutcome.RETRY_SCHEDULED
    assert len(awx_client.launch_calls) == 2


@pytest.mark.asyncio
async def test_repeated_failures_back_off_exponentially(
    dispatcher, store, make_execution, awx_client, clock
):
    awx_client.launch_results = [TransportError("down", backend="awx")]
    execution = await make_execution()

    gaps = []
    for _ in range(4):
        await dispatcher.attempt_launch(execution.id)
        stored = await store.get(execution.id)
        gap = stored.next_launch_attempt_at - clock()
        gaps.append(gap.total_seconds())
        clock.advance(gap.total_seconds())

    assert gaps == [30, 60, 120, 240]
    assert stored.launch_attempts == 4


@pytest.mark.asyncio
async def test_permanent_rejection_fails_execution(
    dispatcher, store, make_execution, awx_client, publisher
):
    awx_client.launch_results = [
        PermanentLaunchError("awx returned 404", backend="awx", status_code=404)
    ]
    execution = await make_execution()

    outcome = await dispatcher.attempt_launch(execution.id)

    assert outcome == LaunchOutcome.FAILED
    stored = await store.get(execution.id)
    assert stored.status == ExecutionStatus.FAILED.value
    assert stored.completed_at is not None
    assert stored.error_message.startswith("Launch rejected: awx returned 404")
    assert publisher.statuses() == ["failed"]


@pytest.mark.asyncio
async def test_unparseable_form_fails_without_calling_backend(
    dispatcher, store, make_execution, awx_client
):
    execution = await make_execution(form_data="{broken")

    assert await dispatcher.attempt_launch(execution.id) == LaunchOutcome.FAILED
    assert awx_client.launch_calls == []
    assert (await store.get(execution.id)).status == "failed"


@pytest.mark.asyncio
async def test_unexpected_error_is_retried(dispatcher, store, make_execution, awx_client):
    awx_client.launch_results = [RuntimeError("bug in client")]
    execution = await make_execution()

    assert await dispatcher.attempt_launch(execution.id) == LaunchOutcome.RETRY_SCHEDULED
    assert (await store.get(execution.id)).last_launch_error == "bug in client"


@pytest.mark.asyncio
async def test_missing_client_is_retried(store, make_execution, publisher, clock):
    dispatcher = Dispatcher(store, {}, publisher, 30, 960, 60, clock=clock)
    execution = await make_execution()

    assert await dispatcher.attempt_launch(execution.id) == LaunchOutcome.RETRY_SCHEDULED
    assert "No execution client configured" in (await store.get(execution.id)).last_launch_error


@pytest.mark.asyncio
async def test_running_execution_is_never_relaunched(dispatcher, make_execution, awx_client):
    execution = await make_execution()
    await dispatcher.attempt_launch(execution.id)

    assert await dispatcher.attempt_launch(execution.id) == LaunchOutcome.SKIPPED
    assert len(awx_client.launch_calls) == 1


@pytest.mark.asyncio
async def test_successful_launch_clears_previous_error(
    dispatcher, store, make_execution, awx_client, clock
):
    awx_client.launch_results = [
        TransportError("down", backend="awx"),
        awx_client.launch_results[0],
    ]
    execution = await make_execution()

    await dispatcher.attempt_launch(execution.id)
    clock.advance(30)
    await dispatcher.attempt_launch(execution.id)

    stored = await store.get(execution.id)
    assert stored.status == "running"
    assert stored.launch_attempts == 1
    assert stored.error_message is None
    assert stored.last_launch_error is None


@pytest.mark.asyncio
async def test_two_failures_then_success(
    dispatcher, store, make_execution, awx_client, publisher, clock
):
    awx_client.launch_results = [
        TransportError("down", backend="awx"),
        TransportError("still down", backend="awx"),
        awx_client.launch_results[0],
    ]
    execution = await make_execution()

    assert await dispatcher.attempt_launch(execution.id) == LaunchOutcome.RETRY_SCHEDULED
    clock.advance(30)
    assert await dispatcher.attempt_launch(execution.id) == LaunchOutcome.RETRY_SCHEDULED
    clock.advance(60)
    assert await dispatcher.attempt_launch(execution.id) == LaunchOutcome.LAUNCHED

    stored = await store.get(execution.id)
    assert stored.status == "running"
    assert stored.launch_attempts == 2
    assert stored.last_launch_error is None
    assert stored.backend_job_id == "101"
    assert publisher.statuses() == ["running"]


@pytest.mark.asyncio
async def test_zero_delays_are_honoured(store, make_execution, awx_client, publisher, clock):
    dispatcher = Dispatcher(
        store, {TargetType.AWX: awx_client}, publisher,
        base_delay_seconds=0, max_delay_seconds=0, claim_seconds=0, clock=clock,
    )
    awx_client.launch_results = [TransportError("down", backend="awx")]
    execution = await make_execution()

    assert dispatcher.base_delay_seconds == 0
    assert dispatcher.max_delay_seconds == 0
    assert dispatcher.claim_seconds == 0

    await dispatcher.attempt_launch(execution.id)
    assert (await store.get(execution.id)).next_launch_attempt_at == clock()
