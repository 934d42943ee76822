"""Pydantic schemas for kiosk PIN login, manager overrides and employee profiles."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, field_validator

from ledgerguard.core.rbac import Role

_PIN_RE = re.compile(r"^\d{4,8}$")


def _check_pin(v: str) -> str:
    v = v.strip()
    if not _PIN_RE.match(v):
        raise ValueError("PIN must be 4-8 digits")
    return v


# ── PIN login ───────────────────────────────────────────────────────
class PinLoginRequest(BaseModel):
    employee_id: int
    pin: str

    @field_validator("pin")
    @classmethod
    def _pin(cls, v: str) -> str:
        return _check_pin(v)


class EmployeeSummary(BaseModel):
    id: int
    display_name: str
    role: str
    tenant_id: int


class ActiveSession(BaseModel):
    id: str
    expires_at: datetime


class PinLoginResponse(BaseModel):
    authenticated: bool = True
    principal: EmployeeSummary
    access_token: str
    token_type: str = "bearer"
    active_session: ActiveSession | None = None


# ── Manager override ────────────────────────────────────────────────
class OverrideAction(str, Enum):
    VOID = "VOID"
    REFUND = "REFUND"
    DISCOUNT = "DISCOUNT"
    PRICE_OVERRIDE = "PRICE_OVERRIDE"
    CASH_DRAWER_OPEN = "CASH_DRAWER_OPEN"
    NO_SALE = "NO_SALE"


class OverrideRequest(BaseModel):
    manager_id: int
    pin: str
    action: OverrideAction
    reason: str | None = None

    @field_validator("pin")
    @classmethod
    def _pin(cls, v: str) -> str:
        return _check_pin(v)


class OverrideResponse(BaseModel):
    approved: bool = True
    manager: EmployeeSummary
    action: OverrideAction
    permission: str
    approved_at: datetime


# ── Employee profiles ───────────────────────────────────────────────
class EmployeeCreate(BaseModel):
    display_name: str
    pin: str
    role: str = Role.STAFF.value

    @field_validator("pin")
    @classmethod
    def _pin(cls, v: str) -> str:
        return _check_pin(v)

    @field_validator("role")
    @classmethod
    def _role(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in {r.value for r in Role}:
            raise ValueError("Unknown role")
        return v

    @field_validator("display_name")
    @classmethod
    def _name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Display name must not be empty")
        return v


class EmployeeRead(BaseModel):
    id: int
    tenant_id: int
    display_name: str
    role: str
    is_active: bool
    last_login_at: datetime | None
    created_at: datetime | None

    model_config = {"from_attributes": True}
