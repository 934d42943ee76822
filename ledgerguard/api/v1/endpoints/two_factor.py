"""
Two-factor endpoints — setup, confirmation, login completion, backup codes
and disable.

Login completion accepts only the purpose-scoped temp token issued by
``/auth/login``; every other operation here needs a full user access token.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerguard.api.v1.deps import (CurrentPrincipal, get_db,
                                     get_optional_principal,
                                     require_user_principal)
from ledgerguard.api.v1.endpoints.auth import (complete_user_login,
                                               count_password_failure,
                                               ensure_not_locked)
from ledgerguard.core import audit, lockout
from ledgerguard.core import two_factor as tfa
from ledgerguard.core.config import settings
from ledgerguard.core.exceptions import (Conflict, Unauthenticated,
                                         ValidationFailed)
from ledgerguard.core.lockout import LockoutScope
from ledgerguard.core.rate_limit import limiter
from ledgerguard.core.security import decode_two_factor_token, verify_password
from ledgerguard.core.sessions import PRINCIPAL_USER
from ledgerguard.models.two_factor import TwoFactorConfig
from ledgerguard.models.user import User
from ledgerguard.schemas.token import LoginResponse, MessageResponse
from ledgerguard.schemas.two_factor import (BackupCodeRequest,
                                            BackupCodesResponse,
                                            RegenerateBackupCodesRequest,
                                            TwoFactorDisableRequest,
                                            TwoFactorSetupResponse,
                                            TwoFactorStatus,
                                            TwoFactorVerifyRequest)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/2fa", tags=["two-factor"])


async def _user_from_temp_token(db: AsyncSession, temp_token: str | None) -> User:
    payload = decode_two_factor_token(temp_token) if temp_token else None
    if payload is None:
        raise Unauthenticated("Invalid or expired verification token")
    user = await db.get(User, int(payload["sub"]))
    if user is None or not user.is_active:
        raise Unauthenticated("Invalid or expired verification token")
    return user


async def _enabled_config(db: AsyncSession, user_id: int) -> TwoFactorConfig:
    config = await tfa.get_config(db, user_id)
    if config is None or config.status != tfa.TwoFactorStatus.ENABLED.value:
        raise ValidationFailed("Two-factor authentication is not enabled")
    return config


def _require_user(principal: CurrentPrincipal | None) -> CurrentPrincipal:
    if principal is None or not principal.is_user:
        raise Unauthenticated()
    return principal


async def _record(db: AsyncSession, request: Request, action: str, user_id: int, **kwargs) -> None:
    await audit.record_event(
        db, request, action, principal_type=PRINCIPAL_USER, principal_id=user_id, **kwargs
    )


# ── Status / setup ──────────────────────────────────────────────────
@router.get("/status", response_model=TwoFactorStatus)
async def two_factor_status(
    principal: CurrentPrincipal = Depends(require_user_principal),
    db: AsyncSession = Depends(get_db),
) -> TwoFactorStatus:
    config = await tfa.get_config(db, principal.id)
    return TwoFactorStatus(
        enabled=config is not None and config.status == tfa.TwoFactorStatus.ENABLED.value,
        pending=config is not None and config.status == tfa.TwoFactorStatus.PENDING.value,
        backup_codes_remaining=await tfa.remaining_backup_codes(db, principal.id) if config else 0,
    )


@router.post("/setup", response_model=TwoFactorSetupResponse)
async def two_factor_setup(
    principal: CurrentPrincipal = Depends(require_user_principal),
    db: AsyncSession = Depends(get_db),
) -> TwoFactorSetupResponse:
    """Generate a secret and backup codes. Codes are shown exactly once."""
    if await tfa.is_enabled(db, principal.id):
        raise Conflict("Two-factor authentication is already enabled")
    result = await tfa.begin_setup(db, principal.id, principal.user.email)
    logger.info("2FA setup started for user %s", principal.id)
    return TwoFactorSetupResponse(
        secret=result.secret,
        otpauth_url=result.otpauth_url,
        backup_codes=result.backup_codes,
    )


# ── Verify (setup confirmation or login completion) ─────────────────
@router.post("/verify", response_model=LoginResponse, response_model_exclude_none=True)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def two_factor_verify(
    request: Request,
    response: Response,
    body: TwoFactorVerifyRequest,
    principal: CurrentPrincipal | None = Depends(get_optional_principal),
    db: AsyncSession = Depends(get_db),
) -> LoginResponse:
    if body.action == "setup":
        principal = _require_user(principal)
        config = await tfa.get_config(db, principal.id)
        if config is None:
            raise ValidationFailed("Two-factor setup has not been started")
        if config.status == tfa.TwoFactorStatus.ENABLED.value:
            raise Conflict("Two-factor authentication is already enabled")
        if not await tfa.verify_code(db, config, body.code):
            await _record(db, request, audit.TWO_FACTOR_FAILED, principal.id, detail="setup")
            raise ValidationFailed("Invalid verification code")
        await tfa.enable(db, config)
        await _record(db, request, audit.TWO_FACTOR_ENABLED, principal.id)
        return LoginResponse()

    user = await _user_from_temp_token(db, body.temp_token)
    await ensure_not_locked(db, request, user)
    config = await _enabled_config(db, user.id)
    if not await tfa.verify_code(db, config, body.code):
        await count_password_failure(db, request, user, audit.TWO_FACTOR_FAILED)
        raise Unauthenticated("Invalid verification code")
    return await complete_user_login(db, request, response, user)


# ── Backup codes ────────────────────────────────────────────────────
@router.post("/backup", response_model=LoginResponse, response_model_exclude_none=True)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def two_factor_backup(
    request: Request,
    response: Response,
    body: BackupCodeRequest,
    principal: CurrentPrincipal | None = Depends(get_optional_principal),
    db: AsyncSession = Depends(get_db),
) -> LoginResponse:
    """Redeem a backup code, either to finish a login or from settings."""
    if body.action == "settings":
        principal = _require_user(principal)
        await _enabled_config(db, principal.id)
        remaining = await tfa.consume_backup_code(db, principal.id, body.code)
        if remaining is None:
            await _record(db, request, audit.TWO_FACTOR_FAILED, principal.id, detail="backup code")
            raise ValidationFailed("Invalid backup code")
        await _record(db, request, audit.BACKUP_CODE_USED, principal.id)
        return LoginResponse(backup_codes_remaining=remaining)

    user = await _user_from_temp_token(db, body.temp_token)
    await ensure_not_locked(db, request, user)
    await _enabled_config(db, user.id)
    remaining = await tfa.consume_backup_code(db, user.id, body.code)
    if remaining is None:
        await count_password_failure(db, request, user, audit.TWO_FACTOR_FAILED)
        raise Unauthenticated("Invalid backup code")
    result = await complete_user_login(db, request, response, user, audit.BACKUP_CODE_USED)
    result.backup_codes_remaining = remaining
    return result


@router.post("/backup-codes/regenerate", response_model=BackupCodesResponse)
async def regenerate_backup_codes(
    request: Request,
    body: RegenerateBackupCodesRequest,
    principal: CurrentPrincipal = Depends(require_user_principal),
    db: AsyncSession = Depends(get_db),
) -> BackupCodesResponse:
    """Replace all backup codes; needs a fresh authenticator code."""
    await ensure_not_locked(db, request, principal.user)
    config = await _enabled_config(db, principal.id)
    if not await tfa.verify_code(db, config, body.code):
        await count_password_failure(db, request, principal.user, audit.TWO_FACTOR_FAILED)
        raise ValidationFailed("Invalid verification code")
    await lockout.reset(db, LockoutScope.PASSWORD, principal.id)
    codes = await tfa.regenerate_backup_codes(db, principal.id)
    await _record(db, request, audit.BACKUP_CODES_REGENERATED, principal.id)
    return BackupCodesResponse(backup_codes=codes)


# ── Disable ─────────────────────────────────────────────────────────
@router.post("/disable", response_model=MessageResponse)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def two_factor_disable(
    request: Request,
    body: TwoFactorDisableRequest,
    principal: CurrentPrincipal = Depends(require_user_principal),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """Turn 2FA off. An active session alone is not enough proof."""
    await ensure_not_locked(db, request, principal.user)
    config = await tfa.get_config(db, principal.id)
    if config is None:
        raise Conflict("Two-factor authentication is not enabled")

    proven = False
    if body.password:
        proven = verify_password(body.password, principal.user.hashed_password)
    if not proven and body.code:
        proven = await tfa.verify_code(db, config, body.code)
    if not proven:
        # Counts against the password lockout, like a login attempt.
        await count_password_failure(db, request, principal.user, audit.TWO_FACTOR_FAILED)
        raise ValidationFailed("Invalid password or verification code")

    await lockout.reset(db, LockoutScope.PASSWORD, principal.id, commit=False)
    await tfa.disable(db, principal.id)
    await _record(db, request, audit.TWO_FACTOR_DISABLED, principal.id)
    return MessageResponse(message="Two-factor authentication disabled")
