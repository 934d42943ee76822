"""
Escalating brute-force lockout, shared by password login, kiosk PIN login
and manager PIN overrides.

Each scope has its own counter space, so failures on one never count
toward another. Escalation (consecutive failures → window)::

    0-2   no lockout, remaining attempts reported
    3-4   30 seconds
    5-9   5 minutes
    10+   permanent (far-future sentinel, cleared only by reset)

Counters live in the ``lockout_states`` table and are bumped with an
atomic ``failed_attempts = failed_attempts + 1`` update followed by a
conditional ``locked_until`` write. Under concurrent failures the exact
request that crosses a tier boundary is best-effort; the counter itself
never loses an increment.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerguard.core.clock import ensure_utc, utcnow
from ledgerguard.models.lockout import LockoutState

logger = logging.getLogger(__name__)


class LockoutScope(str, Enum):
    PASSWORD = "password"
    PIN = "pin"
    OVERRIDE = "override"


PERMANENT_LOCK_THRESHOLD = 10
PERMANENT_LOCK_UNTIL = datetime(2099, 12, 31, tzinfo=timezone.utc)

# (minimum consecutive failures, window); checked highest first.
LOCKOUT_TIERS: tuple[tuple[int, timedelta], ...] = (
    (5, timedelta(minutes=5)),
    (3, timedelta(seconds=30)),
)
_THRESHOLDS = (3, 5, PERMANENT_LOCK_THRESHOLD)


@dataclass
class LockoutStatus:
    locked: bool
    failed_attempts: int
    locked_until: datetime | None = None
    remaining_attempts: int | None = None
    permanent: bool = False

    def retry_after(self, now: datetime | None = None) -> int:
        """Whole seconds until the window closes (at least 1 while locked)."""
        if not self.locked or self.locked_until is None:
            return 0
        delta = (self.locked_until - (now or utcnow())).total_seconds()
        return max(1, math.ceil(delta))


def lockout_window(failed_attempts: int) -> timedelta | None:
    """Window for a failure count; ``None`` means permanent, zero means none."""
    if failed_attempts >= PERMANENT_LOCK_THRESHOLD:
        return None
    for minimum, window in LOCKOUT_TIERS:
        if failed_attempts >= minimum:
            return window
    return timedelta(0)


def remaining_attempts(failed_attempts: int) -> int:
    """Failures left before the next tier kicks in."""
    for threshold in _THRESHOLDS:
        if failed_attempts < threshold:
            return threshold - failed_attempts
    return 0


def _status(failed: int, locked_until: datetime | None, now: datetime) -> LockoutStatus:
    locked_until = ensure_utc(locked_until)
    permanent = failed >= PERMANENT_LOCK_THRESHOLD
    if permanent or (locked_until is not None and locked_until > now):
        return LockoutStatus(
            locked=True,
            failed_attempts=failed,
            locked_until=locked_until or PERMANENT_LOCK_UNTIL,
            permanent=permanent,
        )
    return LockoutStatus(
        locked=False,
        failed_attempts=failed,
        remaining_attempts=remaining_attempts(failed),
    )


async def check_lockout(
    db: AsyncSession,
    scope: LockoutScope,
    principal_id: int,
    now: datetime | None = None,
) -> LockoutStatus:
    """Read-only lockout check; must run before any credential comparison."""
    now = now or utcnow()
    row = (
        await db.execute(
            select(LockoutState.failed_attempts, LockoutState.locked_until).where(
                LockoutState.scope == scope.value,
                LockoutState.principal_id == principal_id,
            )
        )
    ).one_or_none()
    if row is None:
        return _status(0, None, now)
    return _status(row.failed_attempts, row.locked_until, now)


async def _ensure_row(db: AsyncSession, scope: LockoutScope, principal_id: int) -> None:
    """Lazily create the counter row; a concurrent creator wins silently."""
    values = {
        "scope": scope.value,
        "principal_id": principal_id,
        "failed_attempts": 0,
        "updated_at": utcnow(),
    }
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(LockoutState).values(**values).on_conflict_do_nothing(
            index_elements=["scope", "principal_id"]
        )
    elif dialect == "sqlite":
        stmt = sqlite_insert(LockoutState).values(**values).on_conflict_do_nothing(
            index_elements=["scope", "principal_id"]
        )
    else:
        exists = await db.scalar(
            select(LockoutState.id).where(
                LockoutState.scope == scope.value,
                LockoutState.principal_id == principal_id,
            )
        )
        if exists is not None:
            return
        stmt = insert(LockoutState).values(**values)
    await db.execute(stmt)


async def record_failure(
    db: AsyncSession,
    scope: LockoutScope,
    principal_id: int,
    now: datetime | None = None,
) -> LockoutStatus:
    """Count one failed attempt, escalate the window and commit."""
    now = now or utcnow()
    await _ensure_row(db, scope, principal_id)

    key = (LockoutState.scope == scope.value, LockoutState.principal_id == principal_id)
    await db.execute(
        update(LockoutState)
        .where(*key)
        .values(failed_attempts=LockoutState.failed_attempts + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    failed = await db.scalar(select(LockoutState.failed_attempts).where(*key)) or 0

    window = lockout_window(failed)
    locked_until: datetime | None
    if window is None:
        locked_until = PERMANENT_LOCK_UNTIL
    elif window:
        locked_until = now + window
    else:
        locked_until = None

    if locked_until is not None:
        await db.execute(
            update(LockoutState)
            .where(*key)
            .values(locked_until=locked_until)
            .execution_options(synchronize_session=False)
        )
    await db.commit()

    if locked_until is not None:
        logger.warning(
            "Lockout applied: scope=%s principal=%s attempts=%d until=%s",
            scope.value,
            principal_id,
            failed,
            locked_until.isoformat(),
        )
    return _status(failed, locked_until, now)


async def reset(db: AsyncSession, scope: LockoutScope, principal_id: int, *, commit: bool = True) -> None:
    """Clear counter and window (successful login or administrator unlock)."""
    await db.execute(
        update(LockoutState)
        .where(LockoutState.scope == scope.value, LockoutState.principal_id == principal_id)
        .values(failed_attempts=0, locked_until=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if commit:
        await db.commit()
