import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from segmentation.main import app
from segmentation.database import Base, get_db
from segmentation.exceptions import JobQueueError
from segmentation.models import Event, Flow, Profile, Segment
from segmentation.services.segmentation.reconcile_worker import ReconcileWorker
from segmentation.services.segmentation.trigger_dispatcher import TriggerDispatcher

from tests.factories import EventFactory, FlowFactory, ProfileFactory, SegmentFactory

# Test database URL (SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"


class RecordingQueue:
    """In-memory JobQueue that records enqueued jobs and can fail per flow."""

    def __init__(self):
        self.jobs = []
        self.fail_flow_ids = set()
        self.closed = False

    async def enqueue(self, queue_name, job_name, data):
        if data.get("flowId") in self.fail_flow_ids:
            raise JobQueueError(f"Queue unavailable for {job_name}")
        self.jobs.append({"queue": queue_name, "name": job_name, "data": data})
        return f"job-{len(self.jobs)}"

    async def close(self):
        self.closed = True


@pytest_asyncio.fixture
async def test_session_maker():
    """Create test database and tables; yields the session factory."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(test_session_maker):
    async with test_session_maker() as session:
        yield session


@pytest.fixture
def job_queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def dispatcher(job_queue: RecordingQueue) -> TriggerDispatcher:
    return TriggerDispatcher(job_queue, "flow-trigger")


@pytest_asyncio.fixture
async def reconcile_worker(dispatcher, test_session_maker):
    worker = ReconcileWorker(
        dispatcher,
        session_factory=test_session_maker,
        concurrency=2,
        maxsize=100,
    )
    await worker.start()
    yield worker
    await worker.stop(drain=False)


@pytest.fixture
def make_profile(test_db: AsyncSession):
    """Persist a profile; keyword arguments override ProfileFactory defaults."""

    async def _make(**overrides) -> Profile:
        profile = Profile(**ProfileFactory(**overrides))
        test_db.add(profile)
        await test_db.commit()
        await test_db.refresh(profile)
        return profile

    return _make


@pytest.fixture
def make_segment(test_db: AsyncSession):
    async def _make(**overrides) -> Segment:
        segment = Segment(**SegmentFactory(**overrides))
        test_db.add(segment)
        await test_db.commit()
        await test_db.refresh(segment)
        return segment

    return _make


@pytest.fixture
def make_flow(test_db: AsyncSession):
    async def _make(**overrides) -> Flow:
        flow = Flow(**FlowFactory(**overrides))
        test_db.add(flow)
        await test_db.commit()
        await test_db.refresh(flow)
        return flow

    return _make


@pytest.fixture
def make_event(test_db: AsyncSession):
    async def _make(**overrides) -> Event:
        event = Event(**EventFactory(**overrides))
        test_db.add(event)
        await test_db.commit()
        await test_db.refresh(event)
        return event

    return _make


@pytest_asyncio.fixture
async def client(test_db: AsyncSession, dispatcher, reconcile_worker):
    """Create test client with overridden database and background components."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.state.trigger_dispatcher = dispatcher
    app.state.reconcile_worker = reconcile_worker

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.trigger_dispatcher = None
    app.state.reconcile_worker = None
