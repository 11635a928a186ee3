import os
import sys
from pathlib import Path

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import Session, sessionmaker

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

TEST_DATABASE_URL = "sqlite://"
os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)

from insight_sync.config import Settings  # noqa: E402
from insight_sync.database import Base, get_db  # noqa: E402
from insight_sync.main import app  # noqa: E402
from insight_sync.routers.dependencies import get_catalog, get_ingestion_engine  # noqa: E402
from insight_sync.services.application_settings import ConfigurationStore  # noqa: E402
from insight_sync.services.delta_ingestion import DeltaIngestionEngine  # noqa: E402
from insight_sync.services.insight_catalog import InsightCatalog  # noqa: E402


def _create_testing_engine():
    return create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session")
def engine():
    engine = _create_testing_engine()
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(engine) -> sessionmaker:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        sync_access_role="Insight_Analyst",
        sync_max_attempts=1,
        sync_retry_interval_minutes=5,
    )


@pytest.fixture()
def config_store(session_factory, test_settings: Settings) -> ConfigurationStore:
    return ConfigurationStore(session_factory, settings_provider=lambda: test_settings)


class PrefixedTestClient(TestClient):
    api_prefix = "/api"

    def request(self, method: str, url: str, *args, **kwargs):  # type: ignore[override]
        if url.startswith("/"):
            url = f"{self.api_prefix}{url}"
        return super().request(method, url, *args, **kwargs)


@pytest.fixture()
def client(session_factory, config_store: ConfigurationStore) -> Generator[TestClient, None, None]:
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_catalog] = lambda: InsightCatalog(session_factory)
    app.dependency_overrides[get_ingestion_engine] = lambda: DeltaIngestionEngine(
        session_factory,
        config_store=config_store,
    )

    client = PrefixedTestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.clear()
