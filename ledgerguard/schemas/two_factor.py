"""Pydantic schemas for two-factor setup, verification and backup codes."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, model_validator


class TwoFactorStatus(BaseModel):
    enabled: bool
    pending: bool
    backup_codes_remaining: int


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_url: str
    backup_codes: list[str]


class TwoFactorVerifyRequest(BaseModel):
    code: str
    action: Literal["setup", "login"] = "login"
    # Required for action="login": the token returned by /auth/login.
    temp_token: str | None = None


class BackupCodeRequest(BaseModel):
    code: str
    action: Literal["login", "settings"] = "login"
    temp_token: str | None = None


class RegenerateBackupCodesRequest(BaseModel):
    code: str


class BackupCodesResponse(BaseModel):
    backup_codes: list[str]


class TwoFactorDisableRequest(BaseModel):
    password: str | None = None
    code: str | None = None

    @model_validator(mode="after")
    def _require_proof(self) -> "TwoFactorDisableRequest":
        if not self.password and not self.code:
            raise ValueError("Provide either your password or a verification code")
        return self
