"""
Kiosk endpoints — employee PIN login, manager PIN overrides and employee
profile administration.

PIN login and manager overrides keep separate lockout counters. Responses
for a failed PIN::

    400  wrong PIN, ``remaining_attempts`` until the next lockout tier
    429  temporary lockout active (``retry_after`` seconds)
    403  permanent lockout or deactivated profile
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerguard.api.v1.deps import (CurrentPrincipal, get_db,
                                     require_permission, require_tenant)
from ledgerguard.core import audit, lockout
from ledgerguard.core.clock import utcnow
from ledgerguard.core.config import settings
from ledgerguard.core.exceptions import (Forbidden, NotFound, Throttled,
                                         ValidationFailed)
from ledgerguard.core.lockout import LockoutScope, LockoutStatus
from ledgerguard.core.rate_limit import limiter
from ledgerguard.core.rbac import (Permission, can_manage_role,
                                   has_permission)
from ledgerguard.core.security import get_password_hash, verify_password
from ledgerguard.core.sessions import (PRINCIPAL_EMPLOYEE, employee_claims,
                                       issue_tokens)
from ledgerguard.models.employee import EmployeeProfile
from ledgerguard.schemas.kiosk import (ActiveSession, EmployeeCreate,
                                       EmployeeRead, EmployeeSummary,
                                       OverrideAction, OverrideRequest,
                                       OverrideResponse, PinLoginRequest,
                                       PinLoginResponse)
from ledgerguard.schemas.token import MessageResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/kiosk", tags=["kiosk"])

OVERRIDE_PERMISSIONS: dict[OverrideAction, Permission] = {
    OverrideAction.VOID: Permission.POS_VOID,
    OverrideAction.REFUND: Permission.POS_VOID,
    OverrideAction.DISCOUNT: Permission.POS_UPDATE,
    OverrideAction.PRICE_OVERRIDE: Permission.POS_UPDATE,
    OverrideAction.CASH_DRAWER_OPEN: Permission.POS_SETTINGS,
    OverrideAction.NO_SALE: Permission.POS_SETTINGS,
}

PERMANENT_LOCK_MESSAGE = "Account permanently locked. Contact an administrator."


async def require_terminal(
    principal: CurrentPrincipal = Depends(require_permission(Permission.POS_READ)),
) -> CurrentPrincipal:
    """The kiosk device itself runs under a signed-in user account."""
    if not principal.is_user:
        raise Forbidden("PIN login must be started from a signed-in terminal")
    return principal


def _summary(employee: EmployeeProfile) -> EmployeeSummary:
    return EmployeeSummary(
        id=employee.id,
        display_name=employee.display_name,
        role=employee.role,
        tenant_id=employee.tenant_id,
    )


def _locked_error(status_: LockoutStatus) -> Exception:
    if status_.permanent:
        return Forbidden(PERMANENT_LOCK_MESSAGE, locked_until=status_.locked_until.isoformat())
    return Throttled(status_.retry_after(), status_.locked_until)


async def _tenant_employee(db: AsyncSession, employee_id: int, tenant_id: int, label: str) -> EmployeeProfile:
    employee = await db.get(EmployeeProfile, employee_id)
    if employee is None or employee.tenant_id != tenant_id:
        raise NotFound(f"{label} not found")
    return employee


async def _check_pin(
    db: AsyncSession,
    request: Request,
    employee: EmployeeProfile,
    pin: str,
    scope: LockoutScope,
    failed_action: str,
    locked_action: str,
) -> None:
    """Lockout check, then PIN comparison; raises on any rejection."""
    event = {
        "scope": scope.value,
        "principal_type": PRINCIPAL_EMPLOYEE,
        "principal_id": employee.id,
        "tenant_id": employee.tenant_id,
    }
    status_ = await lockout.check_lockout(db, scope, employee.id)
    if status_.locked:
        await audit.record_event(db, request, locked_action, attempt=status_.failed_attempts, **event)
        raise _locked_error(status_)

    if not employee.is_active:
        raise Forbidden("Employee profile is inactive")

    if verify_password(pin, employee.pin_hash):
        return

    status_ = await lockout.record_failure(db, scope, employee.id)
    await audit.record_event(db, request, failed_action, attempt=status_.failed_attempts, **event)
    if status_.locked:
        raise _locked_error(status_)
    raise ValidationFailed("Invalid PIN", remaining_attempts=status_.remaining_attempts)


# ── PIN login ───────────────────────────────────────────────────────
@router.post("/pin-login", response_model=PinLoginResponse)
@limiter.limit(settings.PIN_RATE_LIMIT)
async def pin_login(
    request: Request,
    body: PinLoginRequest,
    terminal: CurrentPrincipal = Depends(require_terminal),
    db: AsyncSession = Depends(get_db),
) -> PinLoginResponse:
    employee = await _tenant_employee(db, body.employee_id, terminal.tenant_id, "Employee")
    await _check_pin(
        db, request, employee, body.pin, LockoutScope.PIN, audit.PIN_FAILED, audit.PIN_LOCKED
    )

    await lockout.reset(db, LockoutScope.PIN, employee.id, commit=False)
    employee.last_login_at = utcnow()
    issued = await issue_tokens(
        db,
        employee_claims(employee),
        user_agent=audit.user_agent(request),
        ip_address=audit.client_ip(request),
    )
    result = PinLoginResponse(
        principal=_summary(employee),
        access_token=issued.access_token,
        active_session=ActiveSession(id=issued.session.id, expires_at=issued.session.expires_at),
    )
    await audit.record_event(
        db,
        request,
        audit.PIN_SUCCESS,
        scope=LockoutScope.PIN.value,
        principal_type=PRINCIPAL_EMPLOYEE,
        principal_id=result.principal.id,
        tenant_id=result.principal.tenant_id,
    )
    return result


# ── Manager override ────────────────────────────────────────────────
@router.post("/override", response_model=OverrideResponse)
@limiter.limit(settings.PIN_RATE_LIMIT)
async def manager_override(
    request: Request,
    body: OverrideRequest,
    principal: CurrentPrincipal = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
) -> OverrideResponse:
    """Authorise a restricted POS action with a manager's PIN."""
    manager = await _tenant_employee(db, body.manager_id, principal.tenant_id, "Manager")
    await _check_pin(
        db,
        request,
        manager,
        body.pin,
        LockoutScope.OVERRIDE,
        audit.OVERRIDE_DENIED,
        audit.OVERRIDE_DENIED,
    )
    # Correct PIN: the counter resets even if the role turns out too low.
    await lockout.reset(db, LockoutScope.OVERRIDE, manager.id)

    permission = OVERRIDE_PERMISSIONS[body.action]
    if not has_permission(manager.role, permission):
        raise Forbidden(
            "Manager does not have permission for this action",
            required=[permission.value],
        )

    result = OverrideResponse(
        manager=_summary(manager),
        action=body.action,
        permission=permission.value,
        approved_at=utcnow(),
    )
    await audit.record_event(
        db,
        request,
        audit.OVERRIDE_SUCCESS,
        scope=LockoutScope.OVERRIDE.value,
        principal_type=PRINCIPAL_EMPLOYEE,
        principal_id=result.manager.id,
        tenant_id=result.manager.tenant_id,
        detail=f"{body.action.value} requested by {principal.principal_type}:{principal.id}"
        + (f" ({body.reason})" if body.reason else ""),
    )
    return result


# ── Employee profiles ───────────────────────────────────────────────
@router.get("/employees", response_model=list[EmployeeRead])
async def list_employees(
    principal: CurrentPrincipal = Depends(require_permission(Permission.USERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> list[EmployeeProfile]:
    result = await db.execute(
        select(EmployeeProfile)
        .where(EmployeeProfile.tenant_id == principal.tenant_id)
        .order_by(EmployeeProfile.display_name)
    )
    return list(result.scalars().all())


@router.post("/employees", response_model=EmployeeRead, status_code=201)
async def create_employee(
    body: EmployeeCreate,
    principal: CurrentPrincipal = Depends(require_permission(Permission.USERS_CREATE)),
    db: AsyncSession = Depends(get_db),
) -> EmployeeProfile:
    if not can_manage_role(principal.role, body.role):
        raise Forbidden("Cannot assign a role equal to or above your own")
    employee = EmployeeProfile(
        tenant_id=principal.tenant_id,
        display_name=body.display_name,
        pin_hash=get_password_hash(body.pin),
        role=body.role,
    )
    db.add(employee)
    await db.commit()
    await db.refresh(employee)
    logger.info("Employee profile %s created in tenant %s", employee.id, employee.tenant_id)
    return employee


@router.post("/employees/{employee_id}/unlock", response_model=MessageResponse)
async def unlock_employee(
    employee_id: int,
    request: Request,
    principal: CurrentPrincipal = Depends(require_permission(Permission.USERS_UPDATE)),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """Administrator reset of both the PIN-login and override counters."""
    employee = await _tenant_employee(db, employee_id, principal.tenant_id, "Employee")
    await lockout.reset(db, LockoutScope.PIN, employee.id, commit=False)
    await lockout.reset(db, LockoutScope.OVERRIDE, employee.id)
    await audit.record_event(
        db,
        request,
        audit.LOCKOUT_RESET,
        scope=LockoutScope.PIN.value,
        principal_type=PRINCIPAL_EMPLOYEE,
        principal_id=employee_id,
        tenant_id=principal.tenant_id,
        detail=f"by {principal.principal_type}:{principal.id}",
    )
    return MessageResponse(message="Employee unlocked")
