import os
from datetime import timedelta
from typing import AsyncGenerator, Awaitable, Callable, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from libs.common.config import Settings
from libs.common.datetime_utils import utc_now
from libs.db.base import Base

# Import all models so metadata includes every table
from services.orders_service import models as _orders_models  # noqa: F401
from services.orders_service.services.pipeline import FulfillmentPipeline
from services.orders_service.services.provider_client import ProviderClient
from services.orders_service.services.scheduler import PollingScheduler
from services.points_service import models as _points_models  # noqa: F401

PROVIDER_BASE_URL = "http://provider.test/api"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """
    Engine on a fresh SQLite file per test, or on TEST_DATABASE_URL if set.

    A file (not :memory:) so that concurrent sessions get their own
    connections and genuinely contend for the same rows.
    """
    db_url = os.environ.get("TEST_DATABASE_URL")
    if db_url:
        engine = create_async_engine(db_url)
    else:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
            connect_args={"timeout": 30},
        )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A plain session for arranging data and asserting on it."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class FakeProvider:
    """In-memory stand-in for the provider's task API.

    Served through ``httpx.MockTransport`` so the real ProviderClient (URL
    building, headers, error classification) is exercised end to end.

    - ``submit_results``: queued responses/exceptions for the next POST /task
      calls; once empty, submissions succeed with a fresh task id.
    - ``task_states``: task id -> JSON payload (or Response) for GET /task/{id}.
    - ``download_results``: task id -> payload for GET /task/{id}/download.
    - ``on_submit``: awaited before a successful submission is answered.
    """

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.requests: list[httpx.Request] = []
        self.submit_results: list = []
        self.task_states: dict[str, object] = {}
        self.download_results: dict[str, object] = {}
        self.cancelled: list[str] = []
        self.on_submit: Optional[Callable[[], Awaitable[None]]] = None
        self._next_task = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls_to(self, method: str, suffix: str = "") -> int:
        return sum(1 for m, p in self.calls if m == method and p.endswith(suffix))

    def set_ready(self, task_id: str, url: str = "https://cdn.test/file.zip", **extra):
        self.task_states[task_id] = {
            "status": "ready",
            "downloadUrl": url,
            "fileName": "file.zip",
            "fileSize": 2048,
            **extra,
        }

    def set_failed(self, task_id: str, message: str = "source removed"):
        self.task_states[task_id] = {"status": "failed", "error": message}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len("/api"):]
        self.calls.append((request.method, path))
        self.requests.append(request)
        parts = path.strip("/").split("/")

        if request.method == "POST" and parts == ["task"]:
            return await self._submit()
        if request.method == "GET" and len(parts) == 2:
            return self._answer(
                self.task_states.get(parts[1], {"status": "processing"})
            )
        if request.method == "GET" and parts[-1] == "download":
            return self._answer(
                self.download_results.get(parts[1], {"status": "processing"})
            )
        if request.method == "POST" and parts[-1] == "cancel":
            self.cancelled.append(parts[1])
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"message": "no such endpoint"})

    async def _submit(self) -> httpx.Response:
        if self.submit_results:
            result = self.submit_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        self._next_task += 1
        task_id = f"task-{self._next_task}"
        self.task_states[task_id] = {"status": "processing"}
        if self.on_submit is not None:
            await self.on_submit()
        return httpx.Response(200, json={"success": True, "task_id": task_id})

    @staticmethod
    def _answer(state) -> httpx.Response:
        if isinstance(state, httpx.Response):
            return state
        return httpx.Response(200, json=state)


class FakeClock:
    """Wall clock that tests can push forward."""

    def __init__(self):
        self.offset = timedelta(0)

    def __call__(self):
        return utc_now() + self.offset

    def advance(self, seconds: float) -> None:
        self.offset += timedelta(seconds=seconds)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite:///./test.db",
        PROVIDER_BASE_URL=PROVIDER_BASE_URL,
        PROVIDER_API_KEY="test-key",
        ORDER_POLL_TIMEOUT_SECONDS=600,
        ORDER_MAX_SUBMIT_ATTEMPTS=3,
        ORDER_SUBMIT_BACKOFF_SECONDS=5,
        SCHEDULER_TICK_SECONDS=0,
        SCHEDULER_CONCURRENCY=4,
    )


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def provider_client(fake_provider, test_settings) -> ProviderClient:
    return ProviderClient(transport=fake_provider.transport, settings=test_settings)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pipeline(session_factory, provider_client, test_settings, clock):
    return FulfillmentPipeline(
        session_factory, provider_client, settings=test_settings, clock=clock
    )


@pytest.fixture
def scheduler(pipeline, session_factory, test_settings) -> PollingScheduler:
    return PollingScheduler(pipeline, session_factory, settings=test_settings)


# ---------------------------------------------------------------------------
# HTTP clients
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def points_client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Points Service app with its DB dependency bound to the test engine."""
    from libs.db.session import get_async_db
    from services.points_service.app.main import create_app

    app = create_app()

    async def _get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = _get_test_db

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def orders_client(pipeline) -> AsyncGenerator[AsyncClient, None]:
    """Orders Service app wired to the test pipeline and fake provider."""
    from services.orders_service.app.main import create_app
    from services.orders_service.dependencies import get_pipeline

    app = create_app()
    app.dependency_overrides[get_pipeline] = lambda: pipeline

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
