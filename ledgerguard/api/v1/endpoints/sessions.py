"""
Session management — list and revoke the caller's own sessions.

The current session is found by hashing the presented bearer value, never
by a client-supplied id.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerguard.api.v1.deps import CurrentPrincipal, get_current_principal, get_db
from ledgerguard.core import audit
from ledgerguard.core.exceptions import NotFound
from ledgerguard.core.security import hash_token
from ledgerguard.core.sessions import (list_sessions,
                                       revoke_all_except_current,
                                       revoke_session)
from ledgerguard.schemas.session import RevokeResponse, SessionList, SessionRead

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("", response_model=SessionList)
async def get_sessions(
    principal: CurrentPrincipal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> SessionList:
    current = hash_token(principal.token)
    rows = await list_sessions(db, principal.principal_type, principal.id)
    return SessionList(
        sessions=[
            SessionRead(
                id=row.id,
                user_agent=row.user_agent,
                ip_address=row.ip_address,
                created_at=row.created_at,
                last_used_at=row.last_used_at,
                expires_at=row.expires_at,
                is_current=row.token_hash == current,
            )
            for row in rows
        ]
    )


@router.post("/{session_id}/revoke", response_model=RevokeResponse)
async def revoke_one(
    session_id: str,
    request: Request,
    principal: CurrentPrincipal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> RevokeResponse:
    if not await revoke_session(db, principal.principal_type, principal.id, session_id):
        raise NotFound("Session not found")
    await audit.record_event(
        db,
        request,
        audit.SESSION_REVOKED,
        principal_type=principal.principal_type,
        principal_id=principal.id,
        detail=session_id,
    )
    return RevokeResponse(revoked=1)


@router.post("/revoke-all", response_model=RevokeResponse)
async def revoke_others(
    request: Request,
    principal: CurrentPrincipal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> RevokeResponse:
    """Sign out everywhere except the session making this request."""
    count = await revoke_all_except_current(db, principal.principal_type, principal.id, principal.token)
    if count:
        await audit.record_event(
            db,
            request,
            audit.SESSION_REVOKED,
            principal_type=principal.principal_type,
            principal_id=principal.id,
            detail=f"{count} other session(s)",
        )
    return RevokeResponse(revoked=count)
