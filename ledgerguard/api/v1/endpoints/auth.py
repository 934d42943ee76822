"""
Auth endpoints — password login, refresh, logout, profile and tenant switch.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerguard.api.cookies import (clear_auth_cookies, set_access_cookie,
                                     set_auth_cookies)
from ledgerguard.api.v1.deps import (CurrentPrincipal, extract_access_token,
                                     get_current_principal, get_db,
                                     oauth2_scheme, require_user_principal)
from ledgerguard.core import audit, lockout
from ledgerguard.core import two_factor as tfa
from ledgerguard.core.clock import utcnow
from ledgerguard.core.config import settings
from ledgerguard.core.exceptions import (AccountLocked, Forbidden,
                                         SessionError, Unauthenticated)
from ledgerguard.core.lockout import LockoutScope
from ledgerguard.core.rate_limit import limiter
from ledgerguard.core.rbac import get_permissions
from ledgerguard.core.security import (AccessTokenClaims,
                                       create_access_token,
                                       create_two_factor_token,
                                       verify_password)
from ledgerguard.core.sessions import (PRINCIPAL_USER, find_current_session,
                                       issue_tokens, replace_access_token,
                                       resolve_user_claims, revoke_by_tokens,
                                       rotate_session)
from ledgerguard.models.user import User
from ledgerguard.schemas.token import (LoginRequest, LoginResponse,
                                       MessageResponse, RefreshRequest,
                                       SwitchTenantRequest,
                                       SwitchTenantResponse, Token)
from ledgerguard.schemas.user import PrincipalRead

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

INVALID_CREDENTIALS = "Invalid email or password"


# ── Helpers shared with the two-factor endpoints ───────────────────
def principal_read(claims: AccessTokenClaims, user: User | None = None) -> PrincipalRead:
    return PrincipalRead(
        id=int(claims.sub),
        principal_type=claims.principal_type,
        email=claims.email,
        full_name=user.full_name if user is not None else None,
        role=claims.role,
        tenant_id=claims.tenant_id,
        tenant_ids=claims.tenant_ids,
        permissions=sorted(p.value for p in get_permissions(claims.role)),
    )


async def complete_user_login(
    db: AsyncSession,
    request: Request,
    response: Response,
    user: User,
    action: str = audit.LOGIN_SUCCESS,
) -> LoginResponse:
    """Issue full tokens for a verified user: the one path every login ends in."""
    await lockout.reset(db, LockoutScope.PASSWORD, user.id, commit=False)
    user.last_login_at = utcnow()
    claims = await resolve_user_claims(db, user)
    issued = await issue_tokens(
        db,
        claims,
        user_agent=audit.user_agent(request),
        ip_address=audit.client_ip(request),
    )
    set_auth_cookies(response, issued.access_token, issued.refresh_token)
    result = LoginResponse(
        access_token=issued.access_token,
        token_type="bearer",
        user=principal_read(claims, user),
    )
    await audit.record_event(
        db,
        request,
        action,
        scope=LockoutScope.PASSWORD.value,
        principal_type=PRINCIPAL_USER,
        principal_id=int(claims.sub),
        tenant_id=claims.tenant_id,
    )
    return result


async def ensure_not_locked(db: AsyncSession, request: Request, user: User) -> None:
    status_ = await lockout.check_lockout(db, LockoutScope.PASSWORD, user.id)
    if status_.locked:
        await audit.record_event(
            db,
            request,
            audit.LOGIN_LOCKED,
            scope=LockoutScope.PASSWORD.value,
            principal_type=PRINCIPAL_USER,
            principal_id=user.id,
            attempt=status_.failed_attempts,
        )
        raise AccountLocked(status_.locked_until, status_.retry_after())


async def count_password_failure(
    db: AsyncSession,
    request: Request,
    user: User,
    action: str = audit.LOGIN_FAILED,
) -> None:
    """Record a failed step of a password login; raises 423 once a lock starts."""
    status_ = await lockout.record_failure(db, LockoutScope.PASSWORD, user.id)
    await audit.record_event(
        db,
        request,
        action,
        scope=LockoutScope.PASSWORD.value,
        principal_type=PRINCIPAL_USER,
        principal_id=user.id,
        attempt=status_.failed_attempts,
    )
    if status_.locked:
        raise AccountLocked(status_.locked_until, status_.retry_after())


# ── Login ───────────────────────────────────────────────────────────
@router.post("/login", response_model=LoginResponse, response_model_exclude_none=True)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    db: AsyncSession = Depends(get_db),
) -> LoginResponse:
    """Authenticate with email/password.

    Returns tokens (and sets the cookie pair), or a two-factor challenge
    when the account has 2FA enabled.
    """
    user = (await db.execute(select(User).where(User.email == body.email))).scalar_one_or_none()

    if user is None:
        verify_password(body.password, None)
        await audit.record_event(
            db, request, audit.LOGIN_FAILED, scope=LockoutScope.PASSWORD.value, detail="unknown account"
        )
        raise Unauthenticated(INVALID_CREDENTIALS)

    # Locked accounts never reach the hash comparison.
    await ensure_not_locked(db, request, user)

    if not verify_password(body.password, user.hashed_password):
        await count_password_failure(db, request, user)
        raise Unauthenticated(INVALID_CREDENTIALS)

    if not user.is_active:
        raise Forbidden("User account is inactive")

    if await tfa.is_enabled(db, user.id):
        temp_token = create_two_factor_token(str(user.id))
        await audit.record_event(
            db,
            request,
            audit.LOGIN_2FA_REQUIRED,
            scope=LockoutScope.PASSWORD.value,
            principal_type=PRINCIPAL_USER,
            principal_id=user.id,
        )
        return LoginResponse(requires_two_factor=True, temp_token=temp_token)

    return await complete_user_login(db, request, response, user)


# ── Refresh ─────────────────────────────────────────────────────────
@router.post("/refresh", response_model=Token)
@limiter.limit(settings.REFRESH_RATE_LIMIT)
async def refresh_access_token_endpoint(
    request: Request,
    response: Response,
    body: RefreshRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> Token:
    # Priority: Body > Cookie
    token_str = None
    if body and body.refresh_token:
        token_str = body.refresh_token
    else:
        token_str = request.cookies.get(settings.REFRESH_TOKEN_COOKIE)

    if not token_str:
        raise Unauthenticated("Refresh token missing")

    try:
        issued = await rotate_session(db, token_str)
    except SessionError as exc:
        await audit.record_event(db, request, audit.SESSION_REFRESH_FAILED, detail=exc.reason)
        raise Unauthenticated(exc.reason) from exc

    set_auth_cookies(response, issued.access_token, issued.refresh_token)
    await audit.record_event(
        db,
        request,
        audit.SESSION_REFRESHED,
        principal_type=issued.session.principal_type,
        principal_id=issued.session.principal_id,
        tenant_id=issued.claims.tenant_id,
    )
    return Token(access_token=issued.access_token, refresh_token=issued.refresh_token)


# ── Logout ──────────────────────────────────────────────────────────
@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    token: Optional[str] = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """Delete the caller's session and clear auth cookies."""
    revoked = await revoke_by_tokens(
        db,
        access_token=extract_access_token(request, token),
        refresh_token=request.cookies.get(settings.REFRESH_TOKEN_COOKIE),
    )
    if revoked:
        await audit.record_event(db, request, audit.LOGOUT, detail=f"{revoked} session(s)")
    clear_auth_cookies(response)
    return MessageResponse(message="Logged out")


# ── Profile / tenant context ────────────────────────────────────────
@router.get("/me", response_model=PrincipalRead)
async def read_current_principal(
    principal: CurrentPrincipal = Depends(get_current_principal),
) -> PrincipalRead:
    """Return the authenticated principal with its effective permissions."""
    user = principal.user
    return principal_read(
        AccessTokenClaims(
            sub=str(principal.id),
            role=principal.role,
            principal_type=principal.principal_type,
            tenant_id=principal.tenant_id,
            tenant_ids=principal.tenant_ids,
            email=user.email if user is not None else None,
        ),
        user,
    )


@router.post("/switch-tenant", response_model=SwitchTenantResponse)
async def switch_tenant(
    request: Request,
    response: Response,
    body: SwitchTenantRequest,
    principal: CurrentPrincipal = Depends(require_user_principal),
    db: AsyncSession = Depends(get_db),
) -> SwitchTenantResponse:
    """Re-issue the access token for another company the user belongs to."""
    user = principal.user
    claims = await resolve_user_claims(db, user, tenant_id=body.tenant_id)
    if claims.tenant_id != body.tenant_id:
        raise Forbidden("You are not a member of this company")

    session = await find_current_session(db, PRINCIPAL_USER, user.id, principal.token)
    if session is None:
        raise Unauthenticated("Session not found")

    user.active_tenant_id = body.tenant_id
    access_token = create_access_token(claims)
    await replace_access_token(db, session, access_token)
    set_access_cookie(response, access_token)
    await audit.record_event(
        db,
        request,
        audit.TENANT_SWITCHED,
        principal_type=PRINCIPAL_USER,
        principal_id=user.id,
        tenant_id=body.tenant_id,
    )
    return SwitchTenantResponse(access_token=access_token, user=principal_read(claims, user))
