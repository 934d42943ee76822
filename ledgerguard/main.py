"""
LedgerGuard — Application entry point.

This is the **only** file that assembles the app.  All authentication
logic lives in the `api/`, `models/`, and `core/` packages.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select

from ledgerguard.api.middleware import Gatekeeper
from ledgerguard.api.v1.api import api_router
from ledgerguard.core.config import settings
from ledgerguard.core.exceptions import register_exception_handlers
from ledgerguard.core.rate_limit import limiter
from ledgerguard.core.rbac import Role
from ledgerguard.core.security import get_password_hash
from ledgerguard.db.base import Base
from ledgerguard.db.session import async_session_factory, engine

# Ensure all models are imported so metadata.create_all can see them
from ledgerguard.models.audit import AuthEvent  # noqa: F401
from ledgerguard.models.employee import EmployeeProfile  # noqa: F401
from ledgerguard.models.lockout import LockoutState  # noqa: F401
from ledgerguard.models.login_session import LoginSession  # noqa: F401
from ledgerguard.models.tenant import Tenant
from ledgerguard.models.two_factor import BackupCode, TwoFactorConfig  # noqa: F401
from ledgerguard.models.user import TenantMembership, User

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


async def seed_owner(session_factory=async_session_factory) -> None:
    """Create the first tenant and its OWNER account when missing."""
    async with session_factory() as session:
        result = await session.execute(
            select(User).where(User.email == settings.FIRST_ADMIN_EMAIL)
        )
        if result.scalar_one_or_none() is not None:
            return

        tenant = Tenant(name=settings.FIRST_TENANT_NAME)
        session.add(tenant)
        await session.flush()

        owner = User(
            email=settings.FIRST_ADMIN_EMAIL,
            hashed_password=get_password_hash(settings.FIRST_ADMIN_PASSWORD),
            full_name="Company Owner",
            active_tenant_id=tenant.id,
        )
        session.add(owner)
        await session.flush()
        session.add(TenantMembership(user_id=owner.id, tenant_id=tenant.id, role=Role.OWNER.value))
        await session.commit()
        logger.info(
            "Default owner created: %s (password: <redacted>) for tenant %r",
            settings.FIRST_ADMIN_EMAIL,
            settings.FIRST_TENANT_NAME,
        )


# ── Lifespan ────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")

    await seed_owner()

    logger.info("LedgerGuard v%s started (%s)", settings.VERSION, settings.ENVIRONMENT)
    yield
    await engine.dispose()
    logger.info("Shutdown complete")


# ── App factory ─────────────────────────────────────────────────────
def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.PROJECT_NAME,
        description="Authentication, session and authorization core",
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Rate limiter (slowapi reads it from app.state)
    application.state.limiter = limiter
    # Session factory used outside request dependencies (Gatekeeper refresh)
    application.state.session_factory = async_session_factory

    # Gatekeeper first so CORS wraps it and answers preflights itself
    application.add_middleware(Gatekeeper)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Global exception handlers (prevent stack-trace leakage)
    register_exception_handlers(application)

    # Mount API v1
    application.include_router(api_router, prefix=settings.API_V1_PREFIX)

    return application


app = create_app()
