"""
Employee profile model — kiosk principals who authenticate with a PIN.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from ledgerguard.core.rbac import Role
from ledgerguard.db.base import Base


class EmployeeProfile(Base):
    __tablename__ = "employee_profiles"

    id: int = Column(Integer, primary_key=True, index=True)  # type: ignore[assignment]
    tenant_id: int = Column(  # type: ignore[assignment]
        Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    display_name: str = Column(String(200), nullable=False)  # type: ignore[assignment]
    pin_hash: str = Column(String(128), nullable=False)  # type: ignore[assignment]
    role: str = Column(  # type: ignore[assignment]
        String(20),
        nullable=False,
        default=Role.STAFF.value,
        server_default=Role.STAFF.value,
    )
    is_active: bool = Column(Boolean, default=True, server_default="true")  # type: ignore[assignment]
    last_login_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    created_at: datetime = Column(  # type: ignore[assignment]
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
