import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from evforum.core.database import Base, build_engine, get_db
from evforum.main import app
from evforum.models import forum as forum_models  # noqa: F401
from evforum.models.forum import Category
from evforum.models.user import User, UserRole
from evforum.modules.presence.tracker import reset_presence_tracker


class FakeClock:
    """Manually advanced epoch clock for presence tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def fresh_presence():
    reset_presence_tracker()
    try:
        yield
    finally:
        reset_presence_tracker()


@pytest_asyncio.fixture
async def engine():
    engine = build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def seeded(session_factory):
    """Users of every role plus one category, committed."""
    async with session_factory() as session:
        alice = User(username="alice", full_name="Alice Volt")
        bob = User(username="bob", full_name="Bob Amp")
        mod = User(username="mod", role=UserRole.MODERATOR)
        admin = User(username="admin", role=UserRole.ADMIN)
        tesla = Category(name="Tesla", slug="tesla", description="Model 3, Y, S, X", sort_order=1)
        rivian = Category(name="Rivian", slug="rivian", sort_order=2)
        session.add_all([alice, bob, mod, admin, tesla, rivian])
        await session.commit()

        return {
            "alice": alice.id,
            "bob": bob.id,
            "mod": mod.id,
            "admin": admin.id,
            "tesla": tesla.id,
            "rivian": rivian.id,
        }


@pytest_asyncio.fixture
async def db(session_factory, seeded):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def api_client(session_factory, seeded):
    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def as_user():
    """Headers authenticating as a user id."""

    def _headers(user_id: int) -> dict[str, str]:
        return {"X-User-Id": str(user_id)}

    return _headers
