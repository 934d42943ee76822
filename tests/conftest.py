"""
Shared test fixtures for the LedgerGuard test suite.

Every test gets its own in-memory aiosqlite database (StaticPool so all
sessions share one connection), wired into both the request dependency
and the Gatekeeper's session factory.
"""

import os
import sys
from typing import AsyncGenerator

import pytest

# Ensure project root is importable
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

# Override environment BEFORE importing application modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CORS_ORIGINS"] = '["*"]'
os.environ["JWT_ACCESS_SECRET"] = "test-access-secret-0123456789abcdef"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret-fedcba9876543210"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ledgerguard.api.v1.deps import get_db
from ledgerguard.core.rbac import Role
from ledgerguard.core.security import get_password_hash
from ledgerguard.db.base import Base
from ledgerguard.db.session import async_session_factory
from ledgerguard.main import app
from ledgerguard.models.employee import EmployeeProfile
from ledgerguard.models.tenant import Tenant
from ledgerguard.models.user import TenantMembership, User

API = "/api/v1"
DEFAULT_PASSWORD = "CorrectHorse42!"


@pytest.fixture(autouse=True)
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """Create all tables on a fresh engine before each test and drop after."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.state.session_factory = factory

    yield factory

    app.dependency_overrides.pop(get_db, None)
    app.state.session_factory = async_session_factory
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def async_client() -> AsyncGenerator[AsyncClient, None]:
    """Return a httpx AsyncClient wired to the app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Return a raw database session for direct queries in tests."""
    async with session_factory() as session:
        yield session


# ── Factories ───────────────────────────────────────────────────────
async def make_tenant(db: AsyncSession, name: str = "Acme Ltd") -> Tenant:
    tenant = Tenant(name=name)
    db.add(tenant)
    await db.commit()
    return tenant


async def make_user(
    db: AsyncSession,
    email: str = "owner@acme.test",
    password: str = DEFAULT_PASSWORD,
    tenant: Tenant | None = None,
    role: Role = Role.OWNER,
    is_active: bool = True,
) -> User:
    user = User(
        email=email,
        hashed_password=get_password_hash(password),
        full_name=email.split("@")[0].title(),
        is_active=is_active,
        active_tenant_id=tenant.id if tenant is not None else None,
    )
    db.add(user)
    await db.flush()
    if tenant is not None:
        db.add(TenantMembership(user_id=user.id, tenant_id=tenant.id, role=role.value))
    await db.commit()
    return user


async def make_employee(
    db: AsyncSession,
    tenant: Tenant,
    pin: str = "4242",
    role: Role = Role.STAFF,
    name: str = "Cashier One",
) -> EmployeeProfile:
    employee = EmployeeProfile(
        tenant_id=tenant.id,
        display_name=name,
        pin_hash=get_password_hash(pin),
        role=role.value,
    )
    db.add(employee)
    await db.commit()
    return employee


async def login(client: AsyncClient, email: str, password: str = DEFAULT_PASSWORD):
    return await client.post(f"{API}/auth/login", json={"email": email, "password": password})


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def tenant(db_session: AsyncSession) -> Tenant:
    return await make_tenant(db_session)


@pytest.fixture
async def owner(db_session: AsyncSession, tenant: Tenant) -> User:
    return await make_user(db_session, tenant=tenant)


@pytest.fixture
async def owner_token(async_client: AsyncClient, owner: User) -> str:
    resp = await login(async_client, owner.email)
    assert resp.status_code == 200, resp.text
    async_client.cookies.clear()
    return resp.json()["access_token"]
