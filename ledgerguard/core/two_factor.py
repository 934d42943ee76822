"""
Two-factor authentication: TOTP (RFC 6238) plus single-use backup codes.

Lifecycle of a :class:`TwoFactorConfig`::

    (none) --setup--> PENDING --first valid code--> ENABLED --disable--> (none)

A PENDING secret is never enforced at login. TOTP codes are single-use:
a code is accepted only if its time step is strictly later than the last
accepted one, enforced with a conditional UPDATE. Backup codes are stored
as SHA-256 digests, one row each, and consumed with a conditional DELETE
so two concurrent redemptions of the same code cannot both succeed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum

import pyotp
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerguard.core.clock import utcnow
from ledgerguard.core.config import settings
from ledgerguard.models.two_factor import BackupCode, TwoFactorConfig

logger = logging.getLogger(__name__)


class TwoFactorStatus(str, Enum):
    PENDING = "pending"
    ENABLED = "enabled"


@dataclass
class SetupResult:
    secret: str
    otpauth_url: str
    backup_codes: list[str]


# ── TOTP primitives ─────────────────────────────────────────────────
def generate_secret() -> str:
    return pyotp.random_base32()


def build_totp(secret: str) -> pyotp.TOTP:
    # SHA1 / 6 digits / 30 s: the combination every authenticator app supports.
    return pyotp.TOTP(secret, digits=settings.TOTP_DIGITS, interval=settings.TOTP_INTERVAL)


def provisioning_uri(secret: str, account_name: str) -> str:
    return build_totp(secret).provisioning_uri(name=account_name, issuer_name=settings.TOTP_ISSUER)


def match_totp_step(secret: str, code: str, now: float | None = None) -> int | None:
    """Return the time step ``code`` belongs to, or ``None`` if it matches none.

    Steps within ``TOTP_VALID_WINDOW`` of the current one are accepted to
    absorb clock drift.
    """
    code = (code or "").strip().replace(" ", "")
    if not (code.isascii() and code.isdigit()) or len(code) != settings.TOTP_DIGITS:
        return None
    totp = build_totp(secret)
    for_time = int(now if now is not None else time.time())
    current = for_time // totp.interval
    window = settings.TOTP_VALID_WINDOW
    for offset in range(-window, window + 1):
        if hmac.compare_digest(totp.at(for_time, counter_offset=offset), code):
            return current + offset
    return None


# ── Backup codes ────────────────────────────────────────────────────
def generate_backup_codes(count: int | None = None) -> list[str]:
    count = count or settings.BACKUP_CODE_COUNT
    return [
        f"{secrets.token_hex(2).upper()}{secrets.token_hex(2).upper()}-{secrets.token_hex(2).upper()}{secrets.token_hex(2).upper()}"
        for _ in range(count)
    ]


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in code.upper() if ch.isalnum())


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode("utf-8")).hexdigest()


async def _replace_backup_codes(db: AsyncSession, user_id: int) -> list[str]:
    await db.execute(
        delete(BackupCode)
        .where(BackupCode.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    codes = generate_backup_codes()
    db.add_all(BackupCode(user_id=user_id, code_hash=hash_backup_code(c)) for c in codes)
    return codes


async def remaining_backup_codes(db: AsyncSession, user_id: int) -> int:
    return await db.scalar(
        select(func.count(BackupCode.id)).where(BackupCode.user_id == user_id)
    ) or 0


async def consume_backup_code(db: AsyncSession, user_id: int, code: str) -> int | None:
    """Redeem one backup code. Returns the remaining count, ``None`` if invalid."""
    if not normalize_backup_code(code):
        return None
    result = await db.execute(
        delete(BackupCode)
        .where(BackupCode.user_id == user_id, BackupCode.code_hash == hash_backup_code(code))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    await db.commit()
    remaining = await remaining_backup_codes(db, user_id)
    if remaining <= settings.BACKUP_CODE_LOW_WATERMARK:
        logger.info("User %s has %d backup codes left", user_id, remaining)
    return remaining


async def regenerate_backup_codes(db: AsyncSession, user_id: int) -> list[str]:
    codes = await _replace_backup_codes(db, user_id)
    await db.commit()
    return codes


# ── Config lifecycle ────────────────────────────────────────────────
async def get_config(db: AsyncSession, user_id: int) -> TwoFactorConfig | None:
    return (
        await db.execute(select(TwoFactorConfig).where(TwoFactorConfig.user_id == user_id))
    ).scalar_one_or_none()


async def is_enabled(db: AsyncSession, user_id: int) -> bool:
    config = await get_config(db, user_id)
    return config is not None and config.status == TwoFactorStatus.ENABLED.value


async def begin_setup(db: AsyncSession, user_id: int, account_name: str) -> SetupResult:
    """Store a fresh PENDING secret and backup codes, replacing any pending ones."""
    secret = generate_secret()
    config = await get_config(db, user_id)
    if config is None:
        config = TwoFactorConfig(user_id=user_id, secret=secret, status=TwoFactorStatus.PENDING.value)
        db.add(config)
    else:
        config.secret = secret
        config.status = TwoFactorStatus.PENDING.value
        config.last_used_step = None
        config.enabled_at = None
    codes = await _replace_backup_codes(db, user_id)
    await db.commit()
    return SetupResult(secret, provisioning_uri(secret, account_name), codes)


async def verify_code(
    db: AsyncSession,
    config: TwoFactorConfig,
    code: str,
    now: float | None = None,
) -> bool:
    """Check a TOTP code and burn its time step."""
    step = match_totp_step(config.secret, code, now)
    if step is None:
        return False
    result = await db.execute(
        update(TwoFactorConfig)
        .where(
            TwoFactorConfig.id == config.id,
            or_(TwoFactorConfig.last_used_step.is_(None), TwoFactorConfig.last_used_step < step),
        )
        .values(last_used_step=step)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Replayed TOTP code rejected for user %s", config.user_id)
        return False
    await db.commit()
    config.last_used_step = step
    return True


async def enable(db: AsyncSession, config: TwoFactorConfig) -> None:
    config.status = TwoFactorStatus.ENABLED.value
    config.enabled_at = utcnow()
    await db.commit()


async def disable(db: AsyncSession, user_id: int) -> None:
    await db.execute(
        delete(BackupCode)
        .where(BackupCode.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(TwoFactorConfig)
        .where(TwoFactorConfig.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
