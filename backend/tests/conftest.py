"""Pytest fixtures for test suite."""

import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch, AsyncMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

# Add backend to path for imports
backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))

from database import Base
from models.job_execution import JobExecution, TargetType, ResourceType, utcnow
from services.execution_client import LaunchResult, StatusReport

# Use SQLite for tests with StaticPool to share connection across async operations.
# StaticPool ensures the same connection is reused, so tables created in create_all()
# are visible to all sessions. Without this, each connection gets its own empty DB.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Controllable replacement for utcnow()."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


def _next(queue: list):
    """Pop the next scripted answer; the last one repeats forever."""
    value = queue.pop(0) if len(queue) > 1 else queue[0]
    if isinstance(value, Exception):
        raise value
    return value


class FakeExecutionClient:
    """In-memory ExecutionClient with scripted answers.

    Each queue holds return values or exceptions to raise, consumed in order.
    """

    def __init__(self, target_type: TargetType):
        self.target_type = target_type
        self.launch_results = [LaunchResult(execution_id="101", raw_response='{"id": 101}')]
        self.statuses = ["running"]
        self.results = [None]
        self.launch_calls = []
        self.status_calls = []
        self.result_calls = []
        self.closed = False

    async def launch(self, target, payload):
        self.launch_calls.append((target, payload))
        return _next(self.launch_results)

    async def get_status(self, execution_id, target):
        self.status_calls.append(execution_id)
        status = _next(self.statuses)
        return StatusReport(status=status, raw_response=f'{{"status": "{status}"}}')

    async def get_result_classification(self, execution_id, target):
        self.result_calls.append(execution_id)
        return _next(self.results)

    async def close(self):
        self.closed = True


class FakePublisher:
    """Records every status event instead of sending it."""

    def __init__(self):
        self.events = []

    async def publish(self, execution):
        from services.status_publisher import build_status_event

        event = build_status_event(execution)
        self.events.append(event)
        return event

    def statuses(self, request_id=None):
        return [
            e.status.value for e in self.events
            if request_id is None or e.request_id == request_id
        ]


@pytest.fixture
async def test_engine():
    """Create a test database engine with in-memory SQLite.

    Uses StaticPool to ensure single connection is reused across all operations,
    which is required for in-memory SQLite to share tables between create_all()
    and subsequent session operations.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Import models to register with Base.metadata
    from models import job_execution, job_run  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def test_session(session_maker):
    """Create a test database session."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def store(session_maker):
    from services.job_store import JobExecutionStore

    return JobExecutionStore(session_maker)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def awx_client():
    return FakeExecutionClient(TargetType.AWX)


@pytest.fixture
def oo_client():
    client = FakeExecutionClient(TargetType.OO)
    client.launch_results = [LaunchResult(execution_id="5001", raw_response="5001")]
    client.statuses = ["RUNNING"]
    return client


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def dispatcher(store, awx_client, oo_client, publisher, clock):
    from services.dispatcher import Dispatcher

    return Dispatcher(
        store,
        {TargetType.AWX: awx_client, TargetType.OO: oo_client},
        publisher,
        base_delay_seconds=30,
        max_delay_seconds=960,
        claim_seconds=60,
        clock=clock,
    )


@pytest.fixture
def reconciler(store, dispatcher, publisher):
    from services.reconciler import Reconciler

    # One at a time: the StaticPool connection is shared by every session
    return Reconciler(store, dispatcher, publisher, max_polling_attempts=1440, concurrency=1)


@pytest.fixture
def make_execution(store):
    """Factory that persists a JobExecution and returns it."""
    counter = {"n": 0}

    async def _make(
        target_type=TargetType.AWX,
        resource_id="42",
        form_data='{"hostname": "web-01"}',
        resource_type=None,
        request_id=None,
        **fields,
    ) -> JobExecution:
        counter["n"] += 1
        if resource_type is None and target_type == TargetType.AWX:
            resource_type = ResourceType.JOB_TEMPLATE
        execution = JobExecution.create(
            request_id=request_id or f"req-{counter['n']:04d}",
            target_type=target_type,
            resource_id=resource_id,
            form_data=form_data,
            resource_type=resource_type,
        )
        for name, value in fields.items():
            setattr(execution, name, value)
        return await store.create(execution)

    return _make


@pytest.fixture
async def test_client(session_maker):
    """Create a test HTTP client for API testing.

    Mocks init_db and close_db to prevent the app from trying to connect
    to the real PostgreSQL database during tests, and points the API at
    the in-memory test database.
    """
    with patch("main.init_db", new_callable=AsyncMock), \
         patch("main.close_db", new_callable=AsyncMock), \
         patch("database.async_session_maker", session_maker):

        from main import app
        from database import get_db
        from api.job_executions import get_store
        from services.job_store import JobExecutionStore

        async def override_get_db():
            async with session_maker() as session:
                yield session

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_store] = lambda: JobExecutionStore(session_maker)

        transport = ASGITransport(app=app)
        try:
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                yield client
        finally:
            app.dependency_overrides.clear()


@pytest.fixture
async def seeded_job_runs(test_session, clock):
    """Seed job runs for system status testing."""
    from models.job_run import JobRun

    now = clock()

    jobs = [
        JobRun(
            job_id="reconcile_executions",
            run_id="run-sweep-0001",
            started_at=now - timedelta(seconds=10),
            completed_at=now - timedelta(seconds=9),
            status="success",
            records_processed=3,
            error_count=0,
        ),
        JobRun(
            job_id="reconcile_executions",
            run_id="run-sweep-0002",
            started_at=now - timedelta(seconds=4),
            completed_at=now - timedelta(seconds=3),
            status="success",
            records_processed=2,
            error_count=0,
        ),
        JobRun(
            job_id="cleanup_job_runs",
            run_id="run-cleanup-01",
            started_at=now - timedelta(hours=2),
            completed_at=now - timedelta(hours=2),
            status="success",
            records_processed=0,
        ),
    ]

    for job in jobs:
        test_session.add(job)
    await test_session.commit()

    return jobs
