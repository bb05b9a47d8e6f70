from __future__ import annotations

from pathlib import Path

import pytest

from credwatch.core.config import get_settings
from credwatch.domain.models import Base
from credwatch.persistence.db import build_engine, build_session_factory
from credwatch.services.resilience import reset_circuit_breakers
from credwatch.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    # Point storage at a per-test directory and keep retries fast; no .env leakage between tests.
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "documents"))
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    monkeypatch.setenv("SECRETS_MASTER_KEY", "test-master-key")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("EXPIRATION_ESCALATION_RECIPIENT", raising=False)
    get_settings.cache_clear()
    reset_circuit_breakers()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_circuit_breakers()


@pytest.fixture
async def session_factory(tmp_path: Path):
    # File-backed SQLite so concurrent sessions see each other's commits.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'credwatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as db_session:
        yield db_session
