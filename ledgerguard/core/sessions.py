"""
Session store and single-session enforcement.

A login session row is the source of truth for login validity; tokens are
bearer proofs that reference it. Creating a session deletes every other
session of the same principal first ("delete all, then insert one"), so a
new login evicts all other devices. Two near-simultaneous logins may each
evict the other's fresh row; the last writer survives and the one-session
invariant still holds.

Refresh tokens are only honoured while their row exists, is unexpired and
still stores that exact token's hash. A mismatching hash means an older,
already-rotated token was replayed, and the session is destroyed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerguard.core.clock import ensure_utc, utcnow
from ledgerguard.core.config import settings
from ledgerguard.core.exceptions import SessionError
from ledgerguard.core.rbac import Role
from ledgerguard.core.security import (AccessTokenClaims, RefreshTokenClaims,
                                       create_access_token,
                                       create_refresh_token,
                                       decode_refresh_token, hash_token)
from ledgerguard.models.employee import EmployeeProfile
from ledgerguard.models.login_session import LoginSession
from ledgerguard.models.user import TenantMembership, User

logger = logging.getLogger(__name__)

PRINCIPAL_USER = "user"
PRINCIPAL_EMPLOYEE = "employee"


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    session: LoginSession
    claims: AccessTokenClaims


# ── Claims resolution ───────────────────────────────────────────────
async def resolve_user_claims(
    db: AsyncSession,
    user: User,
    tenant_id: int | None = None,
) -> AccessTokenClaims:
    """Build access claims from the user's current memberships.

    ``tenant_id`` selects the active tenant when given and the user belongs
    to it; otherwise the stored active tenant, then the first membership.
    Users without any membership get READ_ONLY and no tenant context.
    """
    memberships = (
        await db.execute(
            select(TenantMembership)
            .where(TenantMembership.user_id == user.id)
            .order_by(TenantMembership.id)
        )
    ).scalars().all()
    roles = {m.tenant_id: m.role for m in memberships}

    active = None
    for candidate in (tenant_id, user.active_tenant_id):
        if candidate is not None and candidate in roles:
            active = candidate
            break
    if active is None and memberships:
        active = memberships[0].tenant_id

    return AccessTokenClaims(
        sub=str(user.id),
        role=roles[active] if active is not None else Role.READ_ONLY.value,
        principal_type=PRINCIPAL_USER,
        tenant_id=active,
        tenant_ids=list(roles),
        email=user.email,
    )


def employee_claims(employee: EmployeeProfile) -> AccessTokenClaims:
    return AccessTokenClaims(
        sub=str(employee.id),
        role=employee.role,
        principal_type=PRINCIPAL_EMPLOYEE,
        tenant_id=employee.tenant_id,
        tenant_ids=[employee.tenant_id],
    )


# ── Create ──────────────────────────────────────────────────────────
async def create_session(
    db: AsyncSession,
    principal_type: str,
    principal_id: int,
    access_token: str,
    *,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> tuple[LoginSession, str]:
    """Replace every session of the principal with one new row.

    Returns the row and the refresh token minted for it.
    """
    now = utcnow()
    await db.execute(
        delete(LoginSession)
        .where(
            LoginSession.principal_type == principal_type,
            LoginSession.principal_id == principal_id,
        )
        .execution_options(synchronize_session=False)
    )
    session = LoginSession(
        id=str(uuid.uuid4()),
        principal_type=principal_type,
        principal_id=principal_id,
        token_hash=hash_token(access_token),
        user_agent=user_agent,
        ip_address=ip_address,
        expires_at=now + timedelta(days=settings.SESSION_EXPIRE_DAYS),
        created_at=now,
        last_used_at=now,
    )
    db.add(session)
    await db.flush()

    refresh_token = create_refresh_token(
        RefreshTokenClaims(sub=str(principal_id), session_id=session.id)
    )
    session.refresh_token_hash = hash_token(refresh_token)
    await db.commit()
    logger.info("Session %s created for %s:%s", session.id, principal_type, principal_id)
    return session, refresh_token


async def issue_tokens(
    db: AsyncSession,
    claims: AccessTokenClaims,
    *,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> IssuedTokens:
    """Sign an access token and bind it to a fresh single session.

    Every login modality (password, post-2FA, backup code, kiosk PIN)
    goes through here.
    """
    access_token = create_access_token(claims)
    session, refresh_token = await create_session(
        db,
        claims.principal_type,
        int(claims.sub),
        access_token,
        user_agent=user_agent,
        ip_address=ip_address,
    )
    return IssuedTokens(access_token, refresh_token, session, claims)


# ── Refresh ─────────────────────────────────────────────────────────
async def _discard(db: AsyncSession, session: LoginSession) -> None:
    await db.delete(session)
    await db.commit()


async def rotate_session(db: AsyncSession, refresh_token: str) -> IssuedTokens:
    """Exchange a refresh token for a new token pair on the same session."""
    payload = decode_refresh_token(refresh_token)
    if payload is None:
        raise SessionError("Invalid or expired refresh token")

    session = await db.get(LoginSession, payload["sid"])
    if session is None or str(session.principal_id) != payload["sub"]:
        raise SessionError("Session not found")

    if session.refresh_token_hash != hash_token(refresh_token):
        logger.warning("Refresh token reuse on session %s; revoking", session.id)
        await _discard(db, session)
        raise SessionError("Token has been revoked. Please log in again.")

    now = utcnow()
    if ensure_utc(session.expires_at) <= now:
        await _discard(db, session)
        raise SessionError("Session expired. Please log in again.")

    claims: AccessTokenClaims | None = None
    if session.principal_type == PRINCIPAL_USER:
        user = await db.get(User, session.principal_id)
        if user is not None and user.is_active:
            claims = await resolve_user_claims(db, user)
    elif session.principal_type == PRINCIPAL_EMPLOYEE:
        employee = await db.get(EmployeeProfile, session.principal_id)
        if employee is not None and employee.is_active:
            claims = employee_claims(employee)
    if claims is None:
        await _discard(db, session)
        raise SessionError("Principal not found or inactive")

    access_token = create_access_token(claims)
    new_refresh = create_refresh_token(RefreshTokenClaims(sub=claims.sub, session_id=session.id))
    session.token_hash = hash_token(access_token)
    session.refresh_token_hash = hash_token(new_refresh)
    session.expires_at = now + timedelta(days=settings.SESSION_EXPIRE_DAYS)
    session.last_used_at = now
    await db.commit()
    return IssuedTokens(access_token, new_refresh, session, claims)


async def replace_access_token(db: AsyncSession, session: LoginSession, access_token: str) -> None:
    """Point the session at a re-issued access token (tenant switch)."""
    session.token_hash = hash_token(access_token)
    session.last_used_at = utcnow()
    await db.commit()


# ── Queries / revocation (always scoped to one principal) ──────────
async def list_sessions(
    db: AsyncSession,
    principal_type: str,
    principal_id: int,
    now: datetime | None = None,
) -> list[LoginSession]:
    now = now or utcnow()
    rows = (
        await db.execute(
            select(LoginSession)
            .where(
                LoginSession.principal_type == principal_type,
                LoginSession.principal_id == principal_id,
            )
            .order_by(LoginSession.created_at.desc())
        )
    ).scalars().all()
    return [s for s in rows if ensure_utc(s.expires_at) > now]


async def find_current_session(
    db: AsyncSession,
    principal_type: str,
    principal_id: int,
    access_token: str,
) -> LoginSession | None:
    """Identify the caller's session by the presented bearer value."""
    return (
        await db.execute(
            select(LoginSession).where(
                LoginSession.principal_type == principal_type,
                LoginSession.principal_id == principal_id,
                LoginSession.token_hash == hash_token(access_token),
            )
        )
    ).scalar_one_or_none()


async def revoke_session(
    db: AsyncSession,
    principal_type: str,
    principal_id: int,
    session_id: str,
) -> bool:
    result = await db.execute(
        delete(LoginSession)
        .where(
            LoginSession.id == session_id,
            LoginSession.principal_type == principal_type,
            LoginSession.principal_id == principal_id,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount > 0


async def revoke_all_except_current(
    db: AsyncSession,
    principal_type: str,
    principal_id: int,
    access_token: str,
) -> int:
    result = await db.execute(
        delete(LoginSession)
        .where(
            LoginSession.principal_type == principal_type,
            LoginSession.principal_id == principal_id,
            LoginSession.token_hash != hash_token(access_token),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount


async def revoke_all(db: AsyncSession, principal_type: str, principal_id: int) -> int:
    result = await db.execute(
        delete(LoginSession)
        .where(
            LoginSession.principal_type == principal_type,
            LoginSession.principal_id == principal_id,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount


async def revoke_by_tokens(
    db: AsyncSession,
    access_token: str | None = None,
    refresh_token: str | None = None,
) -> int:
    """Delete the session a bearer value belongs to (logout)."""
    clauses = []
    if access_token:
        clauses.append(LoginSession.token_hash == hash_token(access_token))
    if refresh_token:
        clauses.append(LoginSession.refresh_token_hash == hash_token(refresh_token))
    if not clauses:
        return 0
    stmt = delete(LoginSession).where(or_(*clauses))
    result = await db.execute(stmt.execution_options(synchronize_session=False))
    await db.commit()
    return result.rowcount
