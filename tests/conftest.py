"""pytest fixtures for genledger backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped async session factory on a fresh database
  (temporary SQLite file by default, testcontainers PostgreSQL when
  GENLEDGER_TEST_BACKEND=postgres)
- session / uow_factory: Raw session and UnitOfWork factory on that database
- kie_provider / fal_provider: Scripted provider fakes
- settings / services / services_factory: Test settings and wired services
- test_client: httpx AsyncClient bound to the FastAPI app
"""

import os

os.environ.setdefault("APP_ENV", "test")

import asyncio  # noqa: E402
import subprocess  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import text  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from genledger import models  # noqa: E402,F401
from genledger.core.config import Settings  # noqa: E402
from genledger.core.database import setup_db_session  # noqa: E402
from genledger.services.container import build_services  # noqa: E402
from genledger.services.providers.base import (  # noqa: E402
    AsyncResult,
    JobRequest,
    JobStatusReport,
    ProviderState,
    SubmitResult,
)
from genledger.services.providers.kie_client import KieClient  # noqa: E402
from genledger.uow import create_uow_factory  # noqa: E402

PROJECT_ROOT = Path(__file__).resolve().parent.parent
USE_POSTGRES = os.environ.get("GENLEDGER_TEST_BACKEND", "sqlite") == "postgres"

# Order matters: delete from dependent tables first
TABLES = ("generation_jobs", "token_transactions", "account_balances")


@pytest.fixture(scope="session")
def postgres_url():
    """Provide a session-scoped PostgreSQL URL with migrations applied, or None.

    Container starts once per test session and is reused across all tests.
    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    """
    if not USE_POSTGRES:
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_genledger",
    ) as container:
        db_url = container.get_connection_url(driver="psycopg")

        # alembic/env.py reads DATABASE_URL through Settings
        env = os.environ.copy()
        env["DATABASE_URL"] = db_url

        subprocess.run(
            ["alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=PROJECT_ROOT,
        )

        yield db_url


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def database_url(postgres_url, tmp_path) -> str:
    if postgres_url:
        return postgres_url
    return f"sqlite+aiosqlite:///{tmp_path / 'genledger_test.db'}"


@pytest_asyncio.fixture(scope="function")
async def session_factory(database_url):
    """Provide a session factory on an empty database.

    SQLite databases are created from model metadata; PostgreSQL tables come from
    the Alembic migrations and are emptied after each test.
    """
    factory = setup_db_session(database_url, pool_size=10)
    engine = factory.kw["bind"]

    if not USE_POSTGRES:
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    if USE_POSTGRES:
        async with factory() as session:
            for table in TABLES:
                await session.execute(text(f"DELETE FROM {table}"))
            await session.commit()

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a raw database session; uncommitted changes are rolled back."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


class FakeProvider:
    """Scripted provider client.

    submit() pops the next entry of submit_results (raising it if it is an
    exception). get_status() pops status_reports the same way, repeating the last
    entry once only one is left; with nothing scripted it reports pending.
    """

    def __init__(self, name: str, parse_record=None):
        self.name = name
        self.submit_results: list = []
        self.status_reports: list = []
        self.submitted: list[tuple[str, JobRequest]] = []
        self.polled: list[str] = []
        self.closed = False
        self.on_submit = None
        if parse_record is not None:
            self.parse_record = parse_record

    async def submit(self, provider_model: str, request: JobRequest) -> SubmitResult:
        self.submitted.append((provider_model, request))
        if self.on_submit is not None:
            await self.on_submit(request)
        outcome = (
            self.submit_results.pop(0)
            if self.submit_results
            else AsyncResult(external_task_id=f"{self.name}-task-{len(self.submitted)}")
        )
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def get_status(self, external_task_id: str) -> JobStatusReport:
        self.polled.append(external_task_id)
        if not self.status_reports:
            return JobStatusReport(state=ProviderState.PENDING)
        outcome = self.status_reports.pop(0) if len(self.status_reports) > 1 else self.status_reports[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def kie_provider() -> FakeProvider:
    return FakeProvider("kie", parse_record=KieClient.parse_record)


@pytest.fixture
def fal_provider() -> FakeProvider:
    return FakeProvider("fal")


@pytest.fixture
def settings(database_url) -> Settings:
    """Test settings: no provider keys, fast polling."""
    return Settings(  # type: ignore[call-arg]
        DATABASE_URL=database_url,
        APP_ENV="test",
        POLL_MAX_ATTEMPTS=5,
        POLL_INTERVAL_SECONDS=0,
        STALE_JOB_SECONDS=0,
        DEAD_LETTER_AFTER_SECONDS=3600,
    )


class SleepRecorder:
    """Awaitable sleep stand-in that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest_asyncio.fixture(scope="function")
async def services_factory(settings, uow_factory, kie_provider, fal_provider, sleep_recorder):
    """Provide a factory wiring services with settings overrides (field names).

    Example:
        services = services_factory(charge_policy="on_completion")
    """
    created = []

    def factory(**overrides):
        configured = settings.model_copy(update=overrides) if overrides else settings
        services = build_services(
            configured,
            uow_factory,
            providers={"kie": kie_provider, "fal": fal_provider},
            sleep=sleep_recorder,
        )
        created.append(services)
        return services

    yield factory

    for services in created:
        await services.close()


@pytest.fixture
def services(services_factory):
    """Provide services wired to the test database and provider fakes."""
    return services_factory()


@pytest_asyncio.fixture(scope="function")
async def funded_account(services) -> str:
    """Provide an initialized account holding the 100 token signup bonus."""
    account_id = "user-1"
    await services.ledger.ensure_account(account_id)
    return account_id


@pytest_asyncio.fixture
async def test_client(settings, session_factory, uow_factory, services):
    """Provide AsyncClient for testing API endpoints with database access."""
    from genledger.app import app

    # Inject state normally set by the lifespan
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.services = services

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
