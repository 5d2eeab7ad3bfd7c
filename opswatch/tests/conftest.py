"""Shared fixtures: a SQLite database per test and in-memory collaborators."""

import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from opswatch.src.db.database import Base
from opswatch.src.models import ServiceType, User
from opswatch.src.models.schemas import PipelineUnitCreate, ServiceCreate
from opswatch.src.services import pipelines
from opswatch.src.services.errors import UpstreamError
from opswatch.src.services.orchestrator import PipelineService
from opswatch.src.services.realtime import RealtimeHub

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session

class FakeCIProvider:
    """
    Records every call in `events`. `statuses` maps a project id to the
    statuses its pipelines report, one per poll; the last one repeats.
    """

    def __init__(self, statuses=None, fail_create=None):
        self.statuses = statuses or {}
        self.fail_create = fail_create or set()
        self.created = []
        self.events = []
        self.next_id = 42

    async def create_pipeline(self, project_id, ref, variables):
        self.events.append(("create", project_id))
        if project_id in self.fail_create:
            raise UpstreamError("GitLab request returned 500")
        self.created.append((project_id, ref, dict(variables)))
        pipeline_id = self.next_id
        self.next_id += 1
        return pipeline_id

    async def get_pipeline_status(self, project_id, pipeline_id):
        sequence = self.statuses.setdefault(project_id, ["success"])
        status = sequence.pop(0) if len(sequence) > 1 else sequence[0]
        self.events.append(("status", project_id, status))
        return status

    @property
    def created_projects(self):
        return [project_id for project_id, _, _ in self.created]

class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def send_html(self, subject, html_body, recipients):
        self.sent.append((subject, html_body, list(recipients)))

    @property
    def subjects(self):
        return [subject for subject, _, _ in self.sent]

class FakeConnection:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []
        self.closed = False

    async def send_text(self, data):
        if self.fail:
            raise ConnectionError("socket closed")
        self.messages.append(data)

    async def close(self):
        self.closed = True

class RecordingHub(RealtimeHub):
    """Hub that also remembers every broadcast, subscribed or not."""

    def __init__(self):
        super().__init__()
        self.broadcasts = []

    async def broadcast(self, message):
        self.broadcasts.append(message)
        await super().broadcast(message)

@pytest.fixture
def ci():
    return FakeCIProvider()

@pytest.fixture
def notifier():
    return FakeNotifier()

@pytest.fixture
async def hub():
    hub = RecordingHub()
    hub.start()
    yield hub
    await hub.stop()

@pytest.fixture
def make_service(session_factory, ci, notifier, hub):
    def make(**overrides):
        options = dict(
            poll_interval=0,
            poll_timeout=60,
            execution_timeout=60,
            fetch_retries=3,
            fetch_backoff=0,
            fetch_timeout=5,
            db_timeout=10,
            gitlab_ref="development",
            deploy_variables={"DEPLOY_ENV": "QA"},
        )
        options.update(overrides)
        return PipelineService(session_factory, ci, notifier, hub, **options)
    return make

@pytest.fixture
async def pipeline_service(make_service):
    service = make_service()
    yield service
    await service.shutdown(timeout=5)

@pytest.fixture
async def users(session_factory):
    requester = User(id=uuid.uuid4(), name="Rita Requester", email="rita@example.com",
                     delivery_email="rita.alerts@example.com")
    approver = User(id=uuid.uuid4(), name="Arlo Approver", email="arlo@example.com")
    async with session_factory() as session:
        session.add_all([requester, approver])
        await session.commit()
    return {"requester": requester, "approver": approver}

@pytest.fixture
async def unit(session_factory):
    """Pipeline unit with micro services [A, B] followed by macro M."""
    async with session_factory() as session:
        a = await pipelines.create_service(session, ServiceCreate(
            gitlab_repo_id="repo-a", name="service-a", url="https://gitlab.example.com/a",
            type=ServiceType.MICRO))
        b = await pipelines.create_service(session, ServiceCreate(
            gitlab_repo_id="repo-b", name="service-b", url="https://gitlab.example.com/b",
            type=ServiceType.MICRO))
        m = await pipelines.create_service(session, ServiceCreate(
            gitlab_repo_id="repo-m", name="service-m", url="https://gitlab.example.com/m",
            type=ServiceType.MACRO))
        unit = await pipelines.create_pipeline_unit(session, PipelineUnitCreate(
            macro_service_id=m.id, micro_service_ids=[a.id, b.id]))
    return {"unit": unit, "a": a, "b": b, "m": m}
