from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Point the engine at a throwaway SQLite file before any ghpolicies module builds it.
_TEST_DB = Path(tempfile.gettempdir()) / f"ghpolicies-test-{os.getpid()}.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB}"
os.environ["JOB_EXECUTION_MODE"] = "inline"
os.environ.setdefault("GITHUB_ORGANIZATION", "acme")
os.environ.setdefault("GITHUB_WEBHOOK_SECRET", "test-webhook-secret")

import pytest

from ghpolicies.core.config import get_settings
from ghpolicies.domain.models import Base
from ghpolicies.persistence.db import engine
from ghpolicies.services.runtime import reset_runtime
from ghpolicies.services.telemetry import reset_telemetry
from ghpolicies.tests.utils.fake_github import FakeGitHub


@pytest.fixture(autouse=True)
async def reset_database() -> None:
    # Every test starts from empty tables; dispose so no connection outlives its event loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    get_settings.cache_clear()
    reset_runtime()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_runtime()


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub(organization="acme")
