from collections.abc import AsyncGenerator
from datetime import date
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.core.auth.jwt import create_access_token
from src.core.auth.permissions import Permission
from src.core.database.base import Base
from src.core.database import get_db
from src.core.exceptions import ExternalServiceError
from src.integrations.notifications.dispatcher import Notification, NotificationDispatcher
from src.main import app
from src.modules.leases.models import Lease, LeaseStatus

# Test database URL (in-memory SQLite for speed, or use test PostgreSQL)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ORG_ID = 1
OTHER_ORG_ID = 2
USER_ID = 10


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT nests inside the transaction."""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    _enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(test_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Get test database session."""
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Get test HTTP client with overridden database dependency."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


def auth_headers(
    *permissions: Permission, organization_id: int = ORG_ID, user_id: int = USER_ID
) -> dict[str, str]:
    token = create_access_token(user_id, organization_id, permissions=[str(p) for p in permissions])
    return {"Authorization": f"Bearer {token}"}


async def create_lease(
    db: AsyncSession,
    *,
    organization_id: int = ORG_ID,
    monthly_rent: Decimal | str = "10000.00",
    start_date: date = date(2026, 1, 1),
    end_date: date | None = None,
    rent_paid_until: date | None = None,
    status: LeaseStatus = LeaseStatus.ACTIVE,
    tenant_user_id: int = 500,
    tenant_phone: str | None = "+254712345678",
) -> Lease:
    lease = Lease(
        organization_id=organization_id,
        tenant_user_id=tenant_user_id,
        tenant_phone=tenant_phone,
        monthly_rent=Decimal(str(monthly_rent)),
        status=status.value,
        start_date=start_date,
        end_date=end_date,
        rent_paid_until=rent_paid_until,
    )
    db.add(lease)
    await db.commit()
    return lease


class RecordingDispatcher(NotificationDispatcher):
    """Collects notifications; optionally fails every hand-off."""

    def __init__(self, fail: bool = False):
        self.sent: list[Notification] = []
        self.fail = fail

    async def dispatch(self, notification: Notification) -> str | None:
        if self.fail:
            raise ExternalServiceError("notifications", "transport down")
        self.sent.append(notification)
        return f"msg-{len(self.sent)}"


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def make_headers():
    return auth_headers


@pytest.fixture
def lease_factory(db_session: AsyncSession):
    async def factory(**overrides) -> Lease:
        return await create_lease(db_session, **overrides)

    return factory


@pytest.fixture
def failing_dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher(fail=True)
