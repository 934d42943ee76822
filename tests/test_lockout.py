"""
Lockout tracker tests — escalation tiers, independent scopes and reset.
"""

from datetime import timedelta

import pytest

from ledgerguard.core.clock import utcnow
from ledgerguard.core.lockout import (PERMANENT_LOCK_UNTIL, LockoutScope,
                                      check_lockout, lockout_window,
                                      record_failure, remaining_attempts,
                                      reset)


@pytest.mark.parametrize(
    "failures, window",
    [
        (0, timedelta(0)),
        (2, timedelta(0)),
        (3, timedelta(seconds=30)),
        (4, timedelta(seconds=30)),
        (5, timedelta(minutes=5)),
        (9, timedelta(minutes=5)),
        (10, None),
        (25, None),
    ],
)
def test_lockout_window_tiers(failures, window):
    assert lockout_window(failures) == window


@pytest.mark.parametrize("failures, remaining", [(0, 3), (1, 2), (2, 1), (3, 2), (4, 1), (5, 5), (9, 1), (10, 0)])
def test_remaining_attempts(failures, remaining):
    assert remaining_attempts(failures) == remaining


@pytest.mark.asyncio
async def test_first_failures_report_remaining_attempts(db_session):
    first = await record_failure(db_session, LockoutScope.PASSWORD, 1)
    second = await record_failure(db_session, LockoutScope.PASSWORD, 1)

    assert not first.locked and first.remaining_attempts == 2
    assert not second.locked and second.remaining_attempts == 1


@pytest.mark.asyncio
async def test_escalation_to_short_medium_and_permanent(db_session):
    now = utcnow()

    for _ in range(3):
        status = await record_failure(db_session, LockoutScope.PIN, 5, now=now)
    assert status.locked
    assert status.locked_until == now + timedelta(seconds=30)
    assert status.retry_after(now) == 30

    for _ in range(2):
        status = await record_failure(db_session, LockoutScope.PIN, 5, now=now)
    assert status.failed_attempts == 5
    assert status.locked_until == now + timedelta(minutes=5)

    for _ in range(5):
        status = await record_failure(db_session, LockoutScope.PIN, 5, now=now)
    assert status.failed_attempts == 10
    assert status.permanent
    assert status.locked_until == PERMANENT_LOCK_UNTIL


@pytest.mark.asyncio
async def test_short_lock_expires_but_permanent_does_not(db_session):
    now = utcnow()
    for _ in range(3):
        await record_failure(db_session, LockoutScope.PASSWORD, 2, now=now)

    assert (await check_lockout(db_session, LockoutScope.PASSWORD, 2, now=now)).locked
    later = await check_lockout(db_session, LockoutScope.PASSWORD, 2, now=now + timedelta(seconds=31))
    assert not later.locked
    assert later.failed_attempts == 3

    for _ in range(10):
        await record_failure(db_session, LockoutScope.PASSWORD, 3, now=now)
    far_future = now + timedelta(days=365 * 10)
    assert (await check_lockout(db_session, LockoutScope.PASSWORD, 3, now=far_future)).locked


@pytest.mark.asyncio
async def test_scopes_are_independent(db_session):
    for _ in range(3):
        await record_failure(db_session, LockoutScope.PIN, 9)

    assert (await check_lockout(db_session, LockoutScope.PIN, 9)).locked
    assert not (await check_lockout(db_session, LockoutScope.OVERRIDE, 9)).locked
    assert not (await check_lockout(db_session, LockoutScope.PASSWORD, 9)).locked


@pytest.mark.asyncio
async def test_reset_clears_counter_and_window(db_session):
    for _ in range(5):
        await record_failure(db_session, LockoutScope.OVERRIDE, 4)

    await reset(db_session, LockoutScope.OVERRIDE, 4)
    status = await check_lockout(db_session, LockoutScope.OVERRIDE, 4)

    assert not status.locked
    assert status.failed_attempts == 0
    assert status.remaining_attempts == 3
