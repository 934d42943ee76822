"""
Token service (JWT signing / verification) and password hashing (bcrypt).

Three token kinds share the HS256 signer:

* access tokens — 15 minutes, carry identity + tenant context;
* refresh tokens — 7 days, carry only subject + session id and are
  signed with a separate secret so neither kind verifies as the other;
* two-factor tokens — 5 minutes, signed with the access secret but marked
  with ``purpose="2fa_verify"``; access-token verification rejects them.

Every verification failure collapses to ``None``.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from ledgerguard.core.clock import utcnow
from ledgerguard.core.config import settings
from ledgerguard.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.BCRYPT_ROUNDS,
)

TWO_FACTOR_PURPOSE = "2fa_verify"

# Compared against when the account does not exist, so unknown emails
# cost the same bcrypt work as wrong passwords.
_DUMMY_HASH = pwd_context.hash("ledgerguard-timing-equaliser")


# ── Passwords / PINs ────────────────────────────────────────────────
def verify_password(plain: str, hashed: str | None) -> bool:
    if not hashed:
        pwd_context.verify(plain, _DUMMY_HASH)
        return False
    return pwd_context.verify(plain, hashed)


def get_password_hash(plain: str) -> str:
    return pwd_context.hash(plain)


def hash_token(token: str) -> str:
    """One-way digest used to store bearer values in session rows."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ── Claims ──────────────────────────────────────────────────────────
@dataclass
class AccessTokenClaims:
    sub: str
    role: str
    principal_type: str = "user"
    tenant_id: int | None = None
    tenant_ids: list[int] = field(default_factory=list)
    email: str | None = None


@dataclass
class RefreshTokenClaims:
    sub: str
    session_id: str


def _access_secret() -> str:
    if not settings.JWT_ACCESS_SECRET:
        raise ConfigurationError("JWT_ACCESS_SECRET is not set")
    return settings.JWT_ACCESS_SECRET


def _refresh_secret() -> str:
    if not settings.JWT_REFRESH_SECRET:
        raise ConfigurationError("JWT_REFRESH_SECRET is not set")
    return settings.JWT_REFRESH_SECRET


def _encode(payload: dict[str, Any], secret: str, lifetime: timedelta, now: datetime | None) -> str:
    issued = now or utcnow()
    payload.update(
        {
            "iss": settings.JWT_ISSUER,
            "iat": issued,
            "exp": issued + lifetime,
            "jti": uuid.uuid4().hex,
        }
    )
    return jwt.encode(payload, secret, algorithm=settings.JWT_ALGORITHM)


def _decode(token: str, secret: str) -> dict | None:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
        )
    except JWTError:
        return None
    # python-jose still accepts a token in the exact second it expires.
    exp = payload.get("exp")
    if not isinstance(exp, (int, float)) or exp <= utcnow().timestamp():
        return None
    return payload


# ── Signing ─────────────────────────────────────────────────────────
def create_access_token(claims: AccessTokenClaims, now: datetime | None = None) -> str:
    payload: dict[str, Any] = {
        "sub": claims.sub,
        "type": "access",
        "ptype": claims.principal_type,
        "role": claims.role,
        "tid": claims.tenant_id,
        "tenants": list(claims.tenant_ids),
    }
    if claims.email:
        payload["email"] = claims.email
    return _encode(
        payload,
        _access_secret(),
        timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        now,
    )


def create_refresh_token(claims: RefreshTokenClaims, now: datetime | None = None) -> str:
    return _encode(
        {"sub": claims.sub, "sid": claims.session_id, "type": "refresh"},
        _refresh_secret(),
        timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        now,
    )


def create_two_factor_token(subject: str, now: datetime | None = None) -> str:
    return _encode(
        {"sub": subject, "purpose": TWO_FACTOR_PURPOSE},
        _access_secret(),
        timedelta(minutes=settings.TWO_FACTOR_TOKEN_EXPIRE_MINUTES),
        now,
    )


# ── Verification ────────────────────────────────────────────────────
def decode_access_token(token: str) -> dict | None:
    """Return payload dict if *access* token is valid, else ``None``.

    Tokens carrying any ``purpose`` claim are scoped tokens and never
    count as access tokens, whatever their signature says.
    """
    payload = _decode(token, _access_secret())
    if payload is None:
        return None
    if payload.get("type") != "access" or "purpose" in payload:
        return None
    if not payload.get("sub"):
        return None
    return payload


def decode_refresh_token(token: str) -> dict | None:
    """Return payload dict if *refresh* token is valid, else ``None``."""
    payload = _decode(token, _refresh_secret())
    if payload is None:
        return None
    if payload.get("type") != "refresh" or not payload.get("sub") or not payload.get("sid"):
        return None
    return payload


def decode_two_factor_token(token: str) -> dict | None:
    """Return payload dict only for an unexpired ``2fa_verify`` token."""
    payload = _decode(token, _access_secret())
    if payload is None or payload.get("purpose") != TWO_FACTOR_PURPOSE:
        return None
    if not payload.get("sub"):
        return None
    return payload
