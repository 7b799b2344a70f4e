"""Tests for orchestrator wiring and lifecycle."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from models.job_execution import TargetType
from services.awx_client import AwxClient
from services.oo_client import OoClient


def _connection():
    connection = MagicMock()
    connection.connect = AsyncMock()
    connection.consume = AsyncMock(return_value="ctag-1")
    connection.close = AsyncMock()
    return connection


def test_default_clients_cover_both_backends(store):
    from services.engine import Orchestrator

    engine = Orchestrator(store=store)

    assert isinstance(engine.clients[TargetType.AWX], AwxClient)
    assert isinstance(engine.clients[TargetType.OO], OoClient)
    assert engine.dispatcher.publisher is engine.publisher
    assert engine.reconciler.dispatcher is engine.dispatcher
    assert engine.consumer.dispatcher is engine.dispatcher


@pytest.mark.asyncio
async def test_start_consumes_request_queue(store, awx_client, oo_client):
    from config import settings
    from services.engine import Orchestrator

    connection = _connection()
    engine = Orchestrator(
        store=store,
        clients={TargetType.AWX: awx_client, TargetType.OO: oo_client},
        connection=connection,
    )

    await engine.start(consume=True)

    connection.connect.assert_awaited_once()
    connection.consume.assert_awaited_once_with(
        settings.request_created_queue, engine.consumer.on_message
    )
    assert engine.consuming
    assert engine.publisher.connection is connection

    await engine.stop()

    connection.close.assert_awaited_once()
    assert not engine.consuming
    assert awx_client.closed and oo_client.closed


@pytest.mark.asyncio
async def test_start_without_consume_only_connects(store, awx_client, oo_client):
    from services.engine import Orchestrator

    connection = _connection()
    engine = Orchestrator(
        store=store,
        clients={TargetType.AWX: awx_client, TargetType.OO: oo_client},
        connection=connection,
    )

    await engine.start()

    connection.consume.assert_not_awaited()
    assert not engine.consuming


def test_get_orchestrator_is_shared():
    from services.engine import get_orchestrator, set_orchestrator

    set_orchestrator(None)
    try:
        assert get_orchestrator() is get_orchestrator()
    finally:
        set_orchestrator(None)
