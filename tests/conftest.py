"""pytest fixtures for forge3d backend tests.

Provides:
- postgres_container: Session-scoped testcontainer PostgreSQL instance (opt-in)
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped session factory over a fresh database
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- object_store / background_remover / provider: In-memory collaborators
- orchestrator / reconciler: Services wired to the fakes above

Tests run against a throwaway SQLite file by default. Set
FORGE3D_TEST_DATABASE=postgres to run the same suite against PostgreSQL in a
container with the Alembic migrations applied.
"""

import asyncio
import os
import subprocess
import sys
from pathlib import Path
from typing import AsyncGenerator, Optional
from uuid import UUID

# Settings are read when forge3d.app is imported by test modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REPLICATE_WEBHOOK_SECRET", "test-webhook-secret")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import text  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import forge3d.models  # noqa: E402,F401
from forge3d.core.database import setup_db_session  # noqa: E402
from forge3d.models.generation_request import PHOTO_VIEWS  # noqa: E402
from forge3d.services.exceptions import StorageError  # noqa: E402
from forge3d.services.generation.base import (  # noqa: E402
    GenerationImages,
    GenerationOptions,
    ProviderJobState,
    ProviderStatus,
)
from forge3d.services.orchestrator import GenerationOrchestrator, PhotoUpload  # noqa: E402
from forge3d.services.reconciler import JobReconciler, RetryPolicy  # noqa: E402
from forge3d.uow import create_uow_factory  # noqa: E402

BACKEND_ROOT = Path(__file__).resolve().parent.parent
USE_POSTGRES = os.environ.get("FORGE3D_TEST_DATABASE") == "postgres"

TABLES = ("credit_transactions", "credit_accounts", "generation_requests")


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Container starts once per test session and is reused across all tests.
    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_forge3d",
    ).with_bind_ports(5432, None) as container:
        db_url = container.get_connection_url(driver="psycopg")

        # alembic/env.py reads DATABASE_URL through Settings
        env = os.environ.copy()
        env["DATABASE_URL"] = db_url

        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=BACKEND_ROOT,
        )

        yield container


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests.

    Autouse fixture ensures TZ=UTC is set before any test runs.
    """
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def database_url(request, tmp_path) -> str:
    """URL of the database backing one test."""
    if USE_POSTGRES:
        container = request.getfixturevalue("postgres_container")
        return container.get_connection_url(driver="psycopg")
    return f"sqlite+aiosqlite:///{tmp_path / 'forge3d.db'}"


@pytest_asyncio.fixture(scope="function")
async def session_factory(database_url: str) -> AsyncGenerator[async_sessionmaker, None]:
    """Provide a session factory over empty tables.

    SQLite gets a fresh schema per test; PostgreSQL tables are truncated after
    each test.
    """
    factory = setup_db_session(database_url, pool_size=5)
    engine = factory.kw["bind"]

    if not USE_POSTGRES:
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    if USE_POSTGRES:
        async with factory() as cleanup:
            for table in TABLES:
                await cleanup.execute(text(f"DELETE FROM {table}"))
            await cleanup.commit()

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session.

    Uncommitted changes are rolled back when the test ends.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


class FakeObjectStore:
    """In-memory ObjectStore that records every write.

    Attributes:
        fail_views: Views whose raw upload raises StorageError
        model_failures: Number of upcoming model stores that raise StorageError
    """

    def __init__(self, base_url: str = "https://storage"):
        self.base_url = base_url
        self.objects: dict[str, bytes] = {}
        self.writes: list[str] = []
        self.model_stores: list[tuple[UUID, str]] = []
        self.fail_views: set[str] = set()
        self.model_failures = 0
        self.model_store_started = asyncio.Event()
        self._held = False
        self._release = asyncio.Event()

    def hold_model_stores(self) -> None:
        """Make model stores wait for release_model_stores()."""
        self._held = True

    def release_model_stores(self) -> None:
        self._release.set()

    def _put(self, key: str, data: bytes) -> str:
        self.objects[key] = data
        self.writes.append(key)
        return f"{self.base_url}/{key}"

    async def upload_raw(self, request_id: UUID, view: str, data: bytes, content_type: str) -> str:
        if view in self.fail_views:
            raise StorageError(f"upload of {view} failed")
        return self._put(f"original/{request_id}/{view}", data)

    async def upload_processed(self, request_id: UUID, view: str, data: bytes) -> str:
        return self._put(f"nobgr/{request_id}/{view}.png", data)

    async def download(self, url: str) -> bytes:
        return self.objects.get(url.removeprefix(f"{self.base_url}/"), b"")

    def model_url(self, request_id: UUID) -> str:
        return f"{self.base_url}/model-{request_id}.glb"

    async def store_model_from_url(self, request_id: UUID, artifact_url: str) -> str:
        self.model_store_started.set()
        if self._held:
            await self._release.wait()

        if self.model_failures:
            self.model_failures -= 1
            raise StorageError(f"download failed for {artifact_url}")

        self.model_stores.append((request_id, artifact_url))
        self._put(f"model-{request_id}.glb", b"glb:" + artifact_url.encode())
        return self.model_url(request_id)

    @property
    def photo_writes(self) -> list[str]:
        return [key for key in self.writes if not key.startswith("model-")]


class FakeBackgroundRemover:
    """Returns a marker PNG, or raises `error` when set."""

    def __init__(self):
        self.error: Optional[Exception] = None
        self.calls = 0

    async def remove_background(self, image: bytes) -> bytes:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return b"png:" + image


class FakeProvider:
    """Scriptable GenerationProvider.

    Attributes:
        job_ids: Ids handed out by submit(), in order (job-<n> once exhausted)
        statuses: Status returned by get_status() per job id (processing by default)
        submit_error: Raised by submit() when set
        status_error: Raised by every get_status() call when set
        status_errors: Raised by the next get_status() calls, one each, before status_error
    """

    name = "fake"

    def __init__(self):
        self.job_ids: list[str] = []
        self.statuses: dict[str, ProviderStatus] = {}
        self.submissions: list[tuple[GenerationImages, GenerationOptions]] = []
        self.submit_error: Optional[BaseException] = None
        self.status_error: Optional[Exception] = None
        self.status_errors: list[Exception] = []
        self.status_calls = 0

    async def submit(self, images: GenerationImages, options: GenerationOptions) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append((images, options))
        if self.job_ids:
            return self.job_ids.pop(0)
        return f"job-{len(self.submissions)}"

    async def get_status(self, job_id: str) -> ProviderStatus:
        self.status_calls += 1
        if self.status_errors:
            raise self.status_errors.pop(0)
        if self.status_error is not None:
            raise self.status_error
        return self.statuses.get(
            job_id,
            ProviderStatus(state=ProviderJobState.PROCESSING, stage="processing", progress=10),
        )

    def succeed(self, job_id: str, artifact_url: str = "https://provider/x.glb") -> None:
        self.statuses[job_id] = ProviderStatus(
            state=ProviderJobState.SUCCEEDED, artifact_url=artifact_url, stage="completed", progress=100
        )

    def fail(self, job_id: str, error: str = "mesh generation failed") -> None:
        self.statuses[job_id] = ProviderStatus(state=ProviderJobState.FAILED, error=error)


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def background_remover() -> FakeBackgroundRemover:
    return FakeBackgroundRemover()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the reconciler's backoff (nothing actually sleeps)."""
    return []


@pytest.fixture
def orchestrator(uow_factory, object_store, background_remover, provider) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        uow_factory=uow_factory,
        object_store=object_store,
        background_remover=background_remover,
        provider=provider,
        default_credit_balance=2,
    )


@pytest.fixture
def reconciler(uow_factory, object_store, provider, sleeps) -> JobReconciler:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return JobReconciler(
        uow_factory=uow_factory,
        providers={provider.name: provider},
        object_store=object_store,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=2.0, max_delay=30.0),
        sleep=record_sleep,
    )


@pytest.fixture
def make_photos():
    """Build a photo set: make_photos("front", "back") -> {view: PhotoUpload}."""

    def _make(*views: str, content_type: str = "image/jpeg") -> dict[str, PhotoUpload]:
        views = views or ("front",)
        unknown = set(views) - set(PHOTO_VIEWS)
        assert not unknown, f"unknown views {unknown}"
        return {
            view: PhotoUpload(data=f"{view}-bytes".encode(), content_type=content_type)
            for view in views
        }

    return _make


@pytest.fixture
def funded_user(uow_factory):
    """Create a credit account and return its user id: await funded_user("u1", balance=1)."""

    async def _fund(user_id: str = "user-1", balance: int = 1) -> str:
        async with await uow_factory() as uow:
            await uow.credits.get_or_create(user_id, balance)
        return user_id

    return _fund
