"""
Login session model — the durable source of truth for login validity.

Only SHA-256 digests of the bearer values are stored. At most one row
exists per (principal_type, principal_id); see ledgerguard.core.sessions.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String

from ledgerguard.db.base import Base


class LoginSession(Base):
    __tablename__ = "login_sessions"
    __table_args__ = (Index("ix_login_sessions_principal", "principal_type", "principal_id"),)

    id: str = Column(  # type: ignore[assignment]
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    principal_type: str = Column(String(20), nullable=False)  # type: ignore[assignment]  # user | employee
    principal_id: int = Column(Integer, nullable=False)  # type: ignore[assignment]
    token_hash: str = Column(String(64), nullable=False, index=True)  # type: ignore[assignment]
    refresh_token_hash: str | None = Column(String(64), nullable=True)  # type: ignore[assignment]
    user_agent: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    ip_address: str | None = Column(String(64), nullable=True)  # type: ignore[assignment]
    expires_at: datetime = Column(DateTime(timezone=True), nullable=False)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    last_used_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
