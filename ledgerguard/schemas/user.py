"""Pydantic schemas for principals and team membership."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, field_validator

from ledgerguard.core.rbac import Role

_VALID_ROLES = {r.value for r in Role}


def _check_role(v: str) -> str:
    v = v.strip().upper()
    if v not in _VALID_ROLES:
        raise ValueError(f"Role must be one of: {sorted(_VALID_ROLES)}")
    return v


class PrincipalRead(BaseModel):
    id: int
    principal_type: str
    email: str | None = None
    full_name: str | None = None
    role: str
    tenant_id: int | None = None
    tenant_ids: list[int] = []
    permissions: list[str] = []


class MemberCreate(BaseModel):
    email: str
    password: str | None = None
    full_name: str | None = None
    role: str = Role.STAFF.value

    @field_validator("role")
    @classmethod
    def _validate_role(cls, v: str) -> str:
        return _check_role(v)

    @field_validator("email")
    @classmethod
    def _normalise_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v

    @field_validator("password")
    @classmethod
    def _password_length(cls, v: str | None) -> str | None:
        if v is not None and len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v


class MemberUpdate(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def _validate_role(cls, v: str) -> str:
        return _check_role(v)


class MemberRead(BaseModel):
    user_id: int
    tenant_id: int
    email: str
    full_name: str | None
    role: str
    is_active: bool
    created_at: datetime | None
