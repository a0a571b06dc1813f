"""Shared test fixtures."""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from taxflow.db.base import Base
# Import all models to register with Base.metadata
import taxflow.db.models  # noqa: F401
from taxflow.models.enums import WorkflowStatus
from taxflow.repositories.filing_repo import FilingRepository
from taxflow.repositories.webhook_repo import WebhookEndpointRepository
from taxflow.services.id_generator import generate_id
from taxflow.workers.base import WorkerContext
from taxflow.workers.pool import WorkerPool
from taxflow.workers.queue import InProcessJobQueue

TENANT = "ten_acme"
OTHER_TENANT = "ten_globex"
SECRET = "whsec_test_0123456789abcdef"


class FakeClock:
    """Controllable epoch clock for the in-process queue."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Subscriber:
    """MockTransport handler standing in for subscriber endpoints.

    Records every request; ``respond`` decides the outcome and may raise an
    httpx transport error.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.respond = lambda request: httpx.Response(200, json={"received": True})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)

    def fail_with(self, status_code: int) -> None:
        self.respond = lambda request: httpx.Response(status_code, json={"error": "nope"})

    def refuse(self) -> None:
        def _raise(request):
            raise httpx.ConnectError("Connection refused", request=request)
        self.respond = _raise

    def time_out(self) -> None:
        def _raise(request):
            raise httpx.ReadTimeout("Read timed out", request=request)
        self.respond = _raise


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite async engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return InProcessJobQueue(clock=clock)


@pytest.fixture
def subscriber():
    return Subscriber()


@pytest.fixture
async def http_client(subscriber):
    async with httpx.AsyncClient(transport=httpx.MockTransport(subscriber)) as client:
        yield client


@pytest.fixture
def worker_context(queue, http_client):
    return WorkerContext(queue=queue, http_client=http_client)


@pytest.fixture
def pool(queue, session_factory, worker_context):
    return WorkerPool(queue, session_factory, worker_context, concurrency=1, poll_interval=0.05)


@pytest.fixture
def make_endpoint(session_factory):
    """Insert a webhook endpoint directly; returns its id."""

    async def _make(
        tenant_id: str = TENANT,
        url: str = "https://hooks.example.com/taxflow",
        events: list[str] | None = None,
        subscribe_to_all: bool = False,
        is_active: bool = True,
        is_test_mode: bool = False,
        secret: str | None = SECRET,
        max_retries: int = 5,
        initial_backoff_ms: int = 2000,
        headers: dict | None = None,
    ) -> str:
        endpoint_id = generate_id("whe_")
        async with session_factory() as session:
            await WebhookEndpointRepository(session).create(
                endpoint_id=endpoint_id,
                tenant_id=tenant_id,
                created_by="usr_admin",
                url=url,
                events=events if events is not None else ["filing.status_changed"],
                subscribe_to_all=subscribe_to_all,
                secret=secret,
                is_active=is_active,
                is_test_mode=is_test_mode,
                headers=headers,
                max_retries=max_retries,
                initial_backoff_ms=initial_backoff_ms,
                max_backoff_ms=300_000,
                success_count=0,
                failure_count=0,
            )
            await session.commit()
        return endpoint_id

    return _make


@pytest.fixture
def make_filing(session_factory):
    """Insert a filing in the given status; returns its id."""

    async def _make(
        status: str = WorkflowStatus.DRAFT,
        tenant_id: str = TENANT,
        client_id: str = "cli_001",
        month: str = "2024-04",
    ) -> str:
        filing_id = generate_id("fil_")
        async with session_factory() as session:
            await FilingRepository(session).create(
                filing_id=filing_id,
                tenant_id=tenant_id,
                client_id=client_id,
                financial_year="2024-25",
                month=month,
                workflow_status=status,
                is_locked=status == WorkflowStatus.LOCKED,
                created_by="usr_preparer",
            )
            await session.commit()
        return filing_id

    return _make


@pytest.fixture
def app(db_engine, session_factory, queue, http_client):
    """Create a test application instance with in-memory DB and queue."""
    from taxflow.main import create_app

    _app = create_app()
    _app.state.db_engine = db_engine
    _app.state.db_session_factory = session_factory
    _app.state.redis = None
    _app.state.job_queue = queue
    _app.state.http_client = http_client
    return _app


@pytest.fixture
async def client(app):
    """Async HTTP test client sending the default tenant header."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Tenant-Id": TENANT, "X-Actor-Id": "usr_preparer"},
    ) as ac:
        yield ac
