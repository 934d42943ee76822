"""Pydantic schemas for session listing and revocation."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class SessionRead(BaseModel):
    id: str
    user_agent: str | None
    ip_address: str | None
    created_at: datetime | None
    last_used_at: datetime | None
    expires_at: datetime
    is_current: bool = False


class SessionList(BaseModel):
    sessions: list[SessionRead]


class RevokeResponse(BaseModel):
    success: bool = True
    revoked: int
