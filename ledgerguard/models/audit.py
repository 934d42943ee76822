"""
Authentication audit trail — one row per attempt or session change.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String

from ledgerguard.db.base import Base


class AuthEvent(Base):
    __tablename__ = "auth_events"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    action: str = Column(String(40), nullable=False, index=True)  # type: ignore[assignment]
    scope: str | None = Column(String(20), nullable=True)  # type: ignore[assignment]
    principal_type: str | None = Column(String(20), nullable=True)  # type: ignore[assignment]
    principal_id: int | None = Column(Integer, nullable=True, index=True)  # type: ignore[assignment]
    tenant_id: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]
    ip_address: str | None = Column(String(64), nullable=True)  # type: ignore[assignment]
    user_agent: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    attempt: int | None = Column(Integer, nullable=True)  # type: ignore[assignment]
    detail: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
