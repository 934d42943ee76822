"""
FastAPI dependencies — database session, principal resolution and the
Permission Guard (authenticated + active tenant + permitted).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerguard.core.config import settings
from ledgerguard.core.exceptions import Forbidden, Unauthenticated
from ledgerguard.core.rbac import Permission, resolve_permission
from ledgerguard.core.security import decode_access_token
from ledgerguard.core.sessions import PRINCIPAL_EMPLOYEE, PRINCIPAL_USER
from ledgerguard.db.session import async_session_factory
from ledgerguard.models.employee import EmployeeProfile
from ledgerguard.models.user import User

# auto_error=False so the cookie can be used when the header is missing
oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl=f"{settings.API_V1_PREFIX}/auth/login", auto_error=False
)


# ── Database session ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


# ── Principal ───────────────────────────────────────────────────────
@dataclass
class CurrentPrincipal:
    principal_type: str
    id: int
    role: str
    token: str
    tenant_id: int | None = None
    tenant_ids: list[int] = field(default_factory=list)
    user: User | None = None
    employee: EmployeeProfile | None = None

    @property
    def is_user(self) -> bool:
        return self.principal_type == PRINCIPAL_USER


def extract_access_token(request: Request, header_token: str | None) -> str | None:
    """Gatekeeper-refreshed token, then Authorization header, then cookie."""
    refreshed = getattr(request.state, "access_token", None)
    if refreshed:
        return refreshed
    if header_token:
        return header_token
    cookie = request.cookies.get(settings.ACCESS_TOKEN_COOKIE)
    if cookie and cookie.startswith("Bearer "):
        return cookie[len("Bearer "):]
    return cookie or None


async def get_optional_principal(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> CurrentPrincipal | None:
    """Resolve the caller, or ``None`` when no valid access token is presented.

    Two-factor temp tokens fail ``decode_access_token`` and therefore
    resolve to ``None`` here as well.
    """
    raw = extract_access_token(request, token)
    if not raw:
        return None
    payload = decode_access_token(raw)
    if payload is None:
        return None

    try:
        subject = int(payload["sub"])
    except (TypeError, ValueError):
        return None

    ptype = payload.get("ptype", PRINCIPAL_USER)
    principal = CurrentPrincipal(
        principal_type=ptype,
        id=subject,
        role=payload.get("role", ""),
        token=raw,
        tenant_id=payload.get("tid"),
        tenant_ids=list(payload.get("tenants") or []),
    )
    if ptype == PRINCIPAL_USER:
        principal.user = await db.get(User, subject)
        if principal.user is None:
            return None
        if not principal.user.is_active:
            raise Forbidden("User account is inactive")
    elif ptype == PRINCIPAL_EMPLOYEE:
        principal.employee = await db.get(EmployeeProfile, subject)
        if principal.employee is None:
            return None
        if not principal.employee.is_active:
            raise Forbidden("Employee profile is inactive")
    else:
        return None
    return principal


async def get_current_principal(
    principal: CurrentPrincipal | None = Depends(get_optional_principal),
) -> CurrentPrincipal:
    if principal is None:
        raise Unauthenticated()
    return principal


async def require_user_principal(
    principal: CurrentPrincipal = Depends(get_current_principal),
) -> CurrentPrincipal:
    """Account-level operations are not available to kiosk employees."""
    if not principal.is_user:
        raise Forbidden("This action requires a user account")
    return principal


async def require_tenant(
    principal: CurrentPrincipal = Depends(get_current_principal),
) -> CurrentPrincipal:
    if principal.tenant_id is None:
        raise Forbidden("No active company selected")
    return principal


# ── Permission Guard ────────────────────────────────────────────────
def require_permission(
    *permissions: Permission | str,
) -> Callable[..., Awaitable[CurrentPrincipal]]:
    """Dependency factory: caller must hold *every* listed permission."""

    async def _guard(principal: CurrentPrincipal = Depends(require_tenant)) -> CurrentPrincipal:
        missing = [str(getattr(p, "value", p)) for p in permissions if not resolve_permission(principal.role, p)]
        if missing:
            raise Forbidden("Insufficient permissions", required=missing)
        return principal

    return _guard


def require_any_permission(
    *permissions: Permission | str,
) -> Callable[..., Awaitable[CurrentPrincipal]]:
    """Dependency factory: caller must hold *at least one* listed permission."""

    async def _guard(principal: CurrentPrincipal = Depends(require_tenant)) -> CurrentPrincipal:
        if not any(resolve_permission(principal.role, p) for p in permissions):
            raise Forbidden(
                "Insufficient permissions",
                required_any=[str(getattr(p, "value", p)) for p in permissions],
            )
        return principal

    return _guard
