from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.core.models  # noqa: F401
from app.api.v1.class_hierarchy import service as hierarchy_service
from app.api.v1.promotions import service as promotion_service
from app.auth.schemas import CurrentUser
from app.db.session import Base
from app.main import app
from app.store import get_store
from tests.factories import RecordingStore, make_class


TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture()
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture()
async def store(session_factory: async_sessionmaker) -> RecordingStore:
    return RecordingStore(session_factory)


@pytest.fixture()
def admin() -> CurrentUser:
    return CurrentUser(id="admin-1", role="admin", name="Head Admin")


@pytest.fixture()
def teacher() -> CurrentUser:
    return CurrentUser(id="teacher-1", role="teacher", name="Mrs Bello")


@pytest.fixture()
async def client(store: RecordingStore) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app, using the test store."""
    app.dependency_overrides[get_store] = lambda: store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
async def lenient_client(store: RecordingStore) -> AsyncGenerator[AsyncClient, None]:
    """Like `client`, but unhandled errors come back as responses instead of propagating."""
    app.dependency_overrides[get_store] = lambda: store
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
async def school(store: RecordingStore, admin: CurrentUser) -> dict:
    """Hierarchy Nursery1 -> Nursery2 -> Primary1 with an open promotion period."""
    nursery1 = await make_class(store, "Nursery1", ["Rhymes", "Numbers"])
    nursery2 = await make_class(store, "Nursery2", ["Phonics", "Numbers"])
    primary1 = await make_class(store, "Primary1", ["English", "Math", "Science"])
    await hierarchy_service.save(store, [nursery1.id, nursery2.id, primary1.id], updated_by=admin.id)
    await promotion_service.set_promotion_period(store, admin, True)
    return {"Nursery1": nursery1, "Nursery2": nursery2, "Primary1": primary1}
