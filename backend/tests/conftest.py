import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from quota_ledger.infra.db import Base, get_db_session
from quota_ledger.infra.metrics import configure_metrics
from quota_ledger.main import app
from quota_ledger.settings import settings


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("ledger") / "test.db"
    # One connection per session so that concurrent reservations contend on
    # the SQLite write lock the same way separate replicas would.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original_app_env = settings.app_env
    original_ttl = settings.storage_quota_reservation_ttl_seconds
    original_default_limit = settings.storage_quota_default_limit_bytes
    original_batch_size = settings.storage_quota_sweep_batch_size
    original_reconcile_fix = settings.storage_quota_reconcile_fix
    original_metrics = settings.metrics_enabled
    original_metrics_token = settings.metrics_token
    settings.app_env = "dev"
    yield
    settings.app_env = original_app_env
    settings.storage_quota_reservation_ttl_seconds = original_ttl
    settings.storage_quota_default_limit_bytes = original_default_limit
    settings.storage_quota_sweep_batch_size = original_batch_size
    settings.storage_quota_reconcile_fix = original_reconcile_fix
    settings.metrics_enabled = original_metrics
    settings.metrics_token = original_metrics_token


@pytest.fixture(autouse=True)
def fresh_metrics():
    configure_metrics(True)
    yield
    configure_metrics(settings.metrics_enabled)


@pytest.fixture(autouse=True)
def restore_app_state():
    """Restore app.state after each test to prevent state pollution."""
    original_metrics = getattr(app.state, "metrics", None)
    original_app_settings = getattr(app.state, "app_settings", None)
    yield
    if original_metrics is not None:
        app.state.metrics = original_metrics
    elif hasattr(app.state, "metrics"):
        delattr(app.state, "metrics")

    if original_app_settings is not None:
        app.state.app_settings = original_app_settings
    elif hasattr(app.state, "app_settings"):
        delattr(app.state, "app_settings")


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def client(async_session_maker):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
