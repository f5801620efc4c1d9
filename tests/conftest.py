"""
Test infrastructure for the identity & moderation API.

Strategy
--------
- Service and API tests run on SQLite in-memory via aiosqlite, so no
  Postgres or Redis instance is needed.
- StaticPool hands every session the one in-memory connection; a second
  connection would open a separate, empty database.
- The concurrent registration test needs real separate connections and
  builds its own file-backed SQLite engine instead (see test_identity).
- Foreign keys are switched on for every connection so ON DELETE CASCADE
  behaves as it does on PostgreSQL.
- All tables are created fresh before each test and dropped after, giving
  each test a clean isolated state without needing transactions or truncation.
- Redis is replaced by ``MemoryCaptchaStore``, a dict implementing the
  captcha store protocol, so captcha codes can be read back by the tests.
- The app's ``get_services`` dependency is overridden with a service graph
  built on the test session factories and a cheap password hash.
"""
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.container import Services, build_services
from app.database import Base, install_sqlite_pragmas, make_session_factories
from app.dependencies import get_services
from app.main import app
from app.models import Article, User
from scripts.seed import seed_reference_data

# ---------------------------------------------------------------------------
# Test database engine — SQLite in-memory with aiosqlite
# ---------------------------------------------------------------------------

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine_test = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

install_sqlite_pragmas(engine_test)

async_session_test, autocommit_session_test = make_session_factories(engine_test)


# ---------------------------------------------------------------------------
# Captcha store double
# ---------------------------------------------------------------------------

class MemoryCaptchaStore:
    """Dict-backed captcha store; TTLs are recorded but never enforced."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.values[key] = value
        self.ttls[key] = ttl_seconds

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)
        self.ttls.pop(key, None)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after to guarantee isolation."""
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        PASSWORD_HASH_ITERATIONS=1_000,
        ACCESS_TOKEN_SECRET="test-access-secret",
        REFRESH_TOKEN_SECRET="test-refresh-secret",
        # High enough that ordinary tests never trip the abuse guard
        IP_BAN_THRESHOLD=500,
    )


@pytest.fixture
def captcha_store() -> MemoryCaptchaStore:
    return MemoryCaptchaStore()


@pytest.fixture
def services(test_settings: Settings, captcha_store: MemoryCaptchaStore) -> Services:
    return build_services(test_settings, async_session_test, autocommit_session_test, captcha_store)


@pytest_asyncio.fixture
async def seeded(services: Services) -> Services:
    """Services with the ADMIN / EDITOR / USER roles and permissions in place."""
    await seed_reference_data(services.rbac)
    return services


@pytest_asyncio.fixture
async def db_session() -> AsyncSession:
    """
    Yield a live AsyncSession for tests that need to interact with the
    database directly (e.g. seeding data, asserting ORM state).
    """
    async with async_session_test() as session:
        yield session


@pytest.fixture
def solve_captcha(services: Services, captcha_store: MemoryCaptchaStore):
    """Return a coroutine function that issues a captcha and answers it correctly."""

    async def _solve() -> dict:
        issued = await services.captcha.issue()
        return {"captcha_key": issued["key"], "captcha": captcha_store.values[issued["key"]]}

    return _solve


@pytest.fixture
def make_user(db_session: AsyncSession):
    """Insert a user row directly (no captcha, no abuse guard) and commit it."""

    async def _make(username: str = "member", email: str | None = None, **fields) -> User:
        user = User(
            username=username,
            email=email or f"{username}@example.com",
            password_hash=fields.pop("password_hash", "00:00"),
            **fields,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def make_article(db_session: AsyncSession):
    async def _make(author: User, title: str = "Article") -> Article:
        article = Article(title=title, content="Body", status="PUBLISHED", author_id=author.id)
        db_session.add(article)
        await db_session.commit()
        return article

    return _make


@pytest_asyncio.fixture
async def async_client(services: Services) -> AsyncClient:
    """
    Yield an httpx.AsyncClient wired to the FastAPI app via ASGITransport.

    ASGITransport does not run the lifespan, so the service graph normally
    built at start-up is supplied through the dependency override instead.
    """
    app.dependency_overrides[get_services] = lambda: services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_services, None)
