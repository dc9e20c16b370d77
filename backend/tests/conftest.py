import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import schemaflow.models  # noqa: F401
from schemaflow.core.config import get_settings
from schemaflow.db.base import Base
from schemaflow.db.session import get_db, get_session_factory
from schemaflow.main import app
from schemaflow.pipeline.client import IngestionClient
from schemaflow.pipeline.config import PipelineConfig, PollPolicy


@pytest.fixture()
def session_factory(tmp_path, monkeypatch) -> sessionmaker:
    monkeypatch.setattr(get_settings(), "upload_dir", str(tmp_path / "uploads"))
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    yield TestingSessionLocal
    app.dependency_overrides.clear()
    engine.dispose()


@pytest.fixture()
def client(session_factory: sessionmaker) -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        extraction_poll=PollPolicy(interval=0, max_attempts=3),
        activation_poll=PollPolicy(interval=0, max_attempts=5),
    )


@pytest_asyncio.fixture()
async def api_client(session_factory: sessionmaker) -> IngestionClient:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver/api") as http:
        yield IngestionClient(http)
