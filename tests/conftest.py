"""Pytest configuration and shared fixtures."""

import os
import tempfile

# Settings and the default engine are built at import time
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'ndaflow-test.db')}"
os.environ["PIPELINE_DISPATCH_MODE"] = "inline"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from typing import AsyncIterator
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ndaflow.core.database import Base, build_engine
from ndaflow.database import models  # noqa: F401
from ndaflow.database.models import Document
from ndaflow.main import app
from ndaflow.pipeline.progress import ProgressBroker
from ndaflow.services.analysis_service import AnalysisService
from tests.fakes import create_document


@pytest.fixture
def test_client() -> TestClient:
    """Create FastAPI test client.

    Returns:
        TestClient: FastAPI test client instance
    """
    return TestClient(app)


@pytest.fixture(autouse=True)
def clear_dependency_overrides():
    """Ensure FastAPI dependency overrides are reset between tests."""
    app.dependency_overrides = {}
    yield
    app.dependency_overrides = {}


@pytest_asyncio.fixture
async def session_maker(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory bound to a fresh SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ndaflow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def tenant_id() -> UUID:
    return uuid4()


@pytest_asyncio.fixture
async def document(session_maker, tenant_id) -> Document:
    """A text-based NDA owned by ``tenant_id``."""
    return await create_document(session_maker, tenant_id=tenant_id)


@pytest.fixture
def broker() -> ProgressBroker:
    return ProgressBroker()


@pytest.fixture
def mock_analysis_service() -> MagicMock:
    """Create mock analysis service.

    Returns:
        MagicMock: AnalysisService stand-in with async methods
    """
    service = MagicMock(spec=AnalysisService)
    service.start_analysis = AsyncMock()
    service.get_status = AsyncMock()
    service.get_report = AsyncMock()
    service.cancel = AsyncMock()
    service.resume = AsyncMock()
    service.restart = AsyncMock()
    service.rescore = AsyncMock()
    return service
