"""Pydantic schemas for login, refresh and token responses."""

from __future__ import annotations

from pydantic import BaseModel, field_validator

from ledgerguard.schemas.user import PrincipalRead


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _normalise_email(cls, v: str) -> str:
        return v.strip().lower()


class LoginResponse(BaseModel):
    """Either a full token grant or a two-factor challenge, never both.

    Endpoints serialise with ``response_model_exclude_none`` so a challenge
    carries no ``access_token`` key at all.
    """

    success: bool = True
    access_token: str | None = None
    token_type: str | None = None
    user: PrincipalRead | None = None
    requires_two_factor: bool | None = None
    temp_token: str | None = None
    backup_codes_remaining: int | None = None


class RefreshRequest(BaseModel):
    refresh_token: str | None = None


class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class SwitchTenantRequest(BaseModel):
    tenant_id: int


class SwitchTenantResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: PrincipalRead


class MessageResponse(BaseModel):
    success: bool = True
    message: str
