"""
Team management — company members and their roles.

On top of the flat permission checks, an actor may never assign, modify or
remove a role equal to or above their own (``can_manage_role``).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerguard.api.v1.deps import (CurrentPrincipal, get_db,
                                     require_permission)
from ledgerguard.core import audit, lockout
from ledgerguard.core.exceptions import (Conflict, Forbidden, NotFound,
                                         ValidationFailed)
from ledgerguard.core.lockout import LockoutScope
from ledgerguard.core.rbac import Permission, can_manage_role
from ledgerguard.core.security import get_password_hash
from ledgerguard.core.sessions import PRINCIPAL_USER
from ledgerguard.models.user import TenantMembership, User
from ledgerguard.schemas.token import MessageResponse
from ledgerguard.schemas.user import MemberCreate, MemberRead, MemberUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/team", tags=["team"])


def _member_read(membership: TenantMembership, user: User) -> MemberRead:
    return MemberRead(
        user_id=user.id,
        tenant_id=membership.tenant_id,
        email=user.email,
        full_name=user.full_name,
        role=membership.role,
        is_active=user.is_active,
        created_at=membership.created_at,
    )


async def _get_member(
    db: AsyncSession, principal: CurrentPrincipal, user_id: int
) -> tuple[TenantMembership, User]:
    row = (
        await db.execute(
            select(TenantMembership, User)
            .join(User, User.id == TenantMembership.user_id)
            .where(
                TenantMembership.tenant_id == principal.tenant_id,
                TenantMembership.user_id == user_id,
            )
        )
    ).one_or_none()
    if row is None:
        raise NotFound("Member not found")
    return row[0], row[1]


def _guard_target(principal: CurrentPrincipal, user_id: int, target_role: str) -> None:
    if principal.is_user and principal.id == user_id:
        raise Forbidden("You cannot change your own membership")
    if not can_manage_role(principal.role, target_role):
        raise Forbidden("Cannot modify a member with a role equal to or above your own")


@router.get("/members", response_model=list[MemberRead])
async def list_members(
    principal: CurrentPrincipal = Depends(require_permission(Permission.USERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> list[MemberRead]:
    rows = (
        await db.execute(
            select(TenantMembership, User)
            .join(User, User.id == TenantMembership.user_id)
            .where(TenantMembership.tenant_id == principal.tenant_id)
            .order_by(User.email)
        )
    ).all()
    return [_member_read(m, u) for m, u in rows]


@router.post("/members", response_model=MemberRead, status_code=201)
async def add_member(
    request: Request,
    body: MemberCreate,
    principal: CurrentPrincipal = Depends(require_permission(Permission.USERS_CREATE)),
    db: AsyncSession = Depends(get_db),
) -> MemberRead:
    if not can_manage_role(principal.role, body.role):
        raise Forbidden("Cannot assign a role equal to or above your own")

    user = (await db.execute(select(User).where(User.email == body.email))).scalar_one_or_none()
    if user is None:
        if not body.password:
            raise ValidationFailed("A password is required for new accounts")
        user = User(
            email=body.email,
            hashed_password=get_password_hash(body.password),
            full_name=body.full_name,
            active_tenant_id=principal.tenant_id,
        )
        db.add(user)
        await db.flush()
    else:
        # Existing accounts are never attached to another company.
        existing = await db.scalar(
            select(TenantMembership.id).where(
                TenantMembership.user_id == user.id,
                TenantMembership.tenant_id == principal.tenant_id,
            )
        )
        if existing is not None:
            raise Conflict("User is already a member of this company")
        raise Conflict("An account with this email already exists")

    membership = TenantMembership(user_id=user.id, tenant_id=principal.tenant_id, role=body.role)
    db.add(membership)
    await db.commit()
    await db.refresh(membership)

    result = _member_read(membership, user)
    await audit.record_event(
        db,
        request,
        audit.MEMBER_ADDED,
        principal_type=PRINCIPAL_USER,
        principal_id=result.user_id,
        tenant_id=result.tenant_id,
        detail=f"role={result.role}",
    )
    return result


@router.patch("/members/{user_id}", response_model=MemberRead)
async def update_member(
    user_id: int,
    request: Request,
    body: MemberUpdate,
    principal: CurrentPrincipal = Depends(require_permission(Permission.USERS_UPDATE)),
    db: AsyncSession = Depends(get_db),
) -> MemberRead:
    membership, user = await _get_member(db, principal, user_id)
    _guard_target(principal, user_id, membership.role)
    if not can_manage_role(principal.role, body.role):
        raise Forbidden("Cannot assign a role equal to or above your own")

    previous = membership.role
    membership.role = body.role
    await db.commit()

    result = _member_read(membership, user)
    await audit.record_event(
        db,
        request,
        audit.MEMBER_UPDATED,
        principal_type=PRINCIPAL_USER,
        principal_id=user_id,
        tenant_id=result.tenant_id,
        detail=f"role {previous} -> {result.role}",
    )
    return result


@router.delete("/members/{user_id}", response_model=MessageResponse)
async def remove_member(
    user_id: int,
    request: Request,
    principal: CurrentPrincipal = Depends(require_permission(Permission.USERS_DELETE)),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    membership, user = await _get_member(db, principal, user_id)
    _guard_target(principal, user_id, membership.role)

    if user.active_tenant_id == principal.tenant_id:
        user.active_tenant_id = None
    await db.delete(membership)
    await db.commit()

    await audit.record_event(
        db,
        request,
        audit.MEMBER_REMOVED,
        principal_type=PRINCIPAL_USER,
        principal_id=user_id,
        tenant_id=principal.tenant_id,
    )
    return MessageResponse(message="Member removed")


@router.post("/members/{user_id}/unlock", response_model=MessageResponse)
async def unlock_member(
    user_id: int,
    request: Request,
    principal: CurrentPrincipal = Depends(require_permission(Permission.USERS_UPDATE)),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """Administrator reset of a member's password lockout."""
    membership, _user = await _get_member(db, principal, user_id)
    _guard_target(principal, user_id, membership.role)

    # The password counter is account-wide, so every membership must be in
    # the actor's company and below the actor's role.
    memberships = (
        await db.execute(
            select(TenantMembership.tenant_id, TenantMembership.role).where(
                TenantMembership.user_id == user_id,
            )
        )
    ).all()
    for tenant_id, role in memberships:
        if tenant_id != principal.tenant_id or not can_manage_role(principal.role, role):
            raise Forbidden("Member also belongs to another company and cannot be unlocked here")

    await lockout.reset(db, LockoutScope.PASSWORD, user_id)
    await audit.record_event(
        db,
        request,
        audit.LOCKOUT_RESET,
        scope=LockoutScope.PASSWORD.value,
        principal_type=PRINCIPAL_USER,
        principal_id=user_id,
        tenant_id=principal.tenant_id,
        detail=f"by {principal.principal_type}:{principal.id}",
    )
    return MessageResponse(message="Member unlocked")
