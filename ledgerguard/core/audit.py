"""
Authentication audit trail.

Every attempt (success, failure, rejected-while-locked) and every session
change is written to ``auth_events`` and mirrored on the
``ledgerguard.audit`` logger. Recording is best-effort: callers commit
their decision first, and a failed audit write is logged and rolled back
without touching the response.
"""

from __future__ import annotations

import logging

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerguard.models.audit import AuthEvent

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("ledgerguard.audit")

# Actions
LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGIN_FAILED = "LOGIN_FAILED"
LOGIN_LOCKED = "LOGIN_LOCKED"
LOGIN_2FA_REQUIRED = "LOGIN_2FA_REQUIRED"
TWO_FACTOR_FAILED = "TWO_FACTOR_FAILED"
TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
BACKUP_CODE_USED = "BACKUP_CODE_USED"
BACKUP_CODES_REGENERATED = "BACKUP_CODES_REGENERATED"
PIN_SUCCESS = "PIN_SUCCESS"
PIN_FAILED = "FAILED_PIN"
PIN_LOCKED = "PIN_LOCKED"
OVERRIDE_SUCCESS = "MANAGER_OVERRIDE"
OVERRIDE_DENIED = "MANAGER_OVERRIDE_DENIED"
SESSION_REFRESHED = "SESSION_REFRESHED"
SESSION_REVOKED = "SESSION_REVOKED"
SESSION_REFRESH_FAILED = "SESSION_REFRESH_FAILED"
TENANT_SWITCHED = "TENANT_SWITCHED"
LOGOUT = "LOGOUT"
MEMBER_ADDED = "MEMBER_ADDED"
MEMBER_UPDATED = "MEMBER_UPDATED"
MEMBER_REMOVED = "MEMBER_REMOVED"
LOCKOUT_RESET = "LOCKOUT_RESET"


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def user_agent(request: Request) -> str | None:
    ua = request.headers.get("user-agent")
    return ua[:500] if ua else None


async def record_event(
    db: AsyncSession,
    request: Request | None,
    action: str,
    *,
    scope: str | None = None,
    principal_type: str | None = None,
    principal_id: int | None = None,
    tenant_id: int | None = None,
    attempt: int | None = None,
    detail: str | None = None,
) -> None:
    ip = client_ip(request) if request is not None else None
    ua = user_agent(request) if request is not None else None
    audit_logger.info(
        "%s scope=%s principal=%s:%s tenant=%s attempt=%s ip=%s detail=%s",
        action,
        scope,
        principal_type,
        principal_id,
        tenant_id,
        attempt,
        ip,
        detail,
    )
    try:
        db.add(
            AuthEvent(
                action=action,
                scope=scope,
                principal_type=principal_type,
                principal_id=principal_id,
                tenant_id=tenant_id,
                ip_address=ip,
                user_agent=ua,
                attempt=attempt,
                detail=detail[:500] if detail else None,
            )
        )
        await db.commit()
    except SQLAlchemyError as exc:
        logger.warning("Audit write failed for %s: %s", action, exc)
        await db.rollback()
