"""
Lockout state — failure counter and lockout window per (scope, principal).
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from ledgerguard.db.base import Base


class LockoutState(Base):
    __tablename__ = "lockout_states"
    __table_args__ = (UniqueConstraint("scope", "principal_id", name="uq_lockout_scope_principal"),)

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    scope: str = Column(String(20), nullable=False)  # type: ignore[assignment]  # password | pin | override
    principal_id: int = Column(Integer, nullable=False)  # type: ignore[assignment]
    failed_attempts: int = Column(Integer, nullable=False, default=0, server_default="0")  # type: ignore[assignment]
    locked_until: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    updated_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
