"""
Password login, refresh and single-session tests.

Verifies:
1. Generic credential errors (no account enumeration)
2. Lockout escalation returns 423 even for the correct password
3. Success resets the failure counter
4. A second login evicts the first device's session
5. Refresh-token rotation and replay detection
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import API, DEFAULT_PASSWORD, bearer, login, make_tenant, make_user
from ledgerguard.core.clock import utcnow
from ledgerguard.core.config import settings
from ledgerguard.core.lockout import LockoutScope, check_lockout
from ledgerguard.core.rbac import Role
from ledgerguard.main import seed_owner
from ledgerguard.models.audit import AuthEvent
from ledgerguard.models.lockout import LockoutState
from ledgerguard.models.login_session import LoginSession
from ledgerguard.models.user import TenantMembership


async def _expire_lock(db: AsyncSession, principal_id: int, scope: LockoutScope) -> None:
    await db.execute(
        update(LockoutState)
        .where(LockoutState.scope == scope.value, LockoutState.principal_id == principal_id)
        .values(locked_until=utcnow() - timedelta(seconds=1))
    )
    await db.commit()


@pytest.mark.asyncio
async def test_login_returns_tokens_and_cookies(async_client: AsyncClient, owner):
    resp = await login(async_client, owner.email)

    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["access_token"]
    assert data["token_type"] == "bearer"
    assert "requires_two_factor" not in data
    assert "temp_token" not in data
    assert data["user"]["email"] == owner.email
    assert data["user"]["role"] == "OWNER"
    assert "company:delete" in data["user"]["permissions"]

    cookies = resp.headers.get_list("set-cookie")
    assert any(c.startswith(f"{settings.ACCESS_TOKEN_COOKIE}=") and "HttpOnly" in c for c in cookies)
    assert any(c.startswith(f"{settings.REFRESH_TOKEN_COOKIE}=") and "HttpOnly" in c for c in cookies)


@pytest.mark.asyncio
async def test_login_email_is_case_insensitive(async_client: AsyncClient, owner):
    resp = await login(async_client, "  OWNER@Acme.TEST ")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_unknown_account_and_wrong_password_look_identical(async_client: AsyncClient, owner):
    wrong = await login(async_client, owner.email, "not-the-password")
    unknown = await login(async_client, "nobody@acme.test", "not-the-password")

    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json()
    assert "remaining_attempts" not in wrong.json()


@pytest.mark.asyncio
async def test_inactive_user_is_refused(async_client: AsyncClient, db_session: AsyncSession, tenant):
    user = await make_user(db_session, email="gone@acme.test", tenant=tenant, is_active=False)

    resp = await login(async_client, user.email)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_lockout_after_three_failures_then_recovers(
    async_client: AsyncClient, db_session: AsyncSession, owner
):
    # 1. Two misses are plain 401s
    for _ in range(2):
        assert (await login(async_client, owner.email, "wrong-password")).status_code == 401

    # 2. Third miss starts a 30 second lock
    third = await login(async_client, owner.email, "wrong-password")
    assert third.status_code == 423
    body = third.json()
    assert body["success"] is False
    assert 0 < body["retry_after"] <= 30
    assert body["locked_until"]
    assert third.headers["Retry-After"] == str(body["retry_after"])

    # 3. Correct password is still rejected while locked
    assert (await login(async_client, owner.email)).status_code == 423

    # 4. Window elapses: correct password succeeds and the counter resets
    await _expire_lock(db_session, owner.id, LockoutScope.PASSWORD)
    assert (await login(async_client, owner.email)).status_code == 200

    status = await check_lockout(db_session, LockoutScope.PASSWORD, owner.id)
    assert status.failed_attempts == 0
    assert not status.locked


@pytest.mark.asyncio
async def test_lockout_escalates_to_five_minutes(
    async_client: AsyncClient, db_session: AsyncSession, owner
):
    for _ in range(3):
        await login(async_client, owner.email, "wrong-password")
    await _expire_lock(db_session, owner.id, LockoutScope.PASSWORD)

    assert (await login(async_client, owner.email, "wrong-password")).status_code == 423
    await _expire_lock(db_session, owner.id, LockoutScope.PASSWORD)
    fifth = await login(async_client, owner.email, "wrong-password")

    assert fifth.status_code == 423
    assert 30 < fifth.json()["retry_after"] <= 300


@pytest.mark.asyncio
async def test_tenth_failure_locks_permanently(
    async_client: AsyncClient, db_session: AsyncSession, owner
):
    for _ in range(10):
        await login(async_client, owner.email, "wrong-password")
        # Let every timed window lapse so each guess reaches the counter.
        await _expire_lock(db_session, owner.id, LockoutScope.PASSWORD)

    status = await check_lockout(db_session, LockoutScope.PASSWORD, owner.id)
    assert status.failed_attempts == 10
    assert status.permanent

    # Correct password, no active window, still locked.
    resp = await login(async_client, owner.email)
    assert resp.status_code == 423
    assert resp.json()["success"] is False


@pytest.mark.asyncio
async def test_login_attempts_are_audited(async_client: AsyncClient, db_session: AsyncSession, owner):
    await login(async_client, owner.email, "wrong-password")
    await login(async_client, owner.email)

    actions = (
        await db_session.execute(
            select(AuthEvent.action, AuthEvent.attempt)
            .where(AuthEvent.principal_id == owner.id)
            .order_by(AuthEvent.id)
        )
    ).all()
    assert [a for a, _ in actions] == ["LOGIN_FAILED", "LOGIN_SUCCESS"]
    assert actions[0].attempt == 1


# ── Sessions / refresh ──────────────────────────────────────────────
@pytest.mark.asyncio
async def test_second_login_evicts_first_device(
    async_client: AsyncClient, db_session: AsyncSession, owner
):
    # Device A
    first = await login(async_client, owner.email)
    refresh_a = first.cookies[settings.REFRESH_TOKEN_COOKIE]
    async_client.cookies.clear()

    # Device B
    second = await login(async_client, owner.email)
    assert second.status_code == 200
    async_client.cookies.clear()

    count = await db_session.scalar(
        select(func.count(LoginSession.id)).where(LoginSession.principal_id == owner.id)
    )
    assert count == 1

    resp = await async_client.post(f"{API}/auth/refresh", json={"refresh_token": refresh_a})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Session not found"


@pytest.mark.asyncio
async def test_refresh_rotates_and_detects_replay(async_client: AsyncClient, owner):
    first = await login(async_client, owner.email)
    original = first.cookies[settings.REFRESH_TOKEN_COOKIE]
    async_client.cookies.clear()

    rotated = await async_client.post(f"{API}/auth/refresh", json={"refresh_token": original})
    assert rotated.status_code == 200
    tokens = rotated.json()
    assert tokens["refresh_token"] != original
    assert tokens["access_token"] != first.json()["access_token"]
    async_client.cookies.clear()

    # Replaying the superseded token destroys the session...
    replay = await async_client.post(f"{API}/auth/refresh", json={"refresh_token": original})
    assert replay.status_code == 401
    assert "revoked" in replay.json()["detail"]

    # ...so the legitimately rotated token is dead too.
    after = await async_client.post(f"{API}/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert after.status_code == 401
    assert after.json()["detail"] == "Session not found"


@pytest.mark.asyncio
async def test_refresh_uses_cookie_when_body_missing(async_client: AsyncClient, owner):
    await login(async_client, owner.email)

    resp = await async_client.post(f"{API}/auth/refresh")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_refresh_rejects_expired_session(
    async_client: AsyncClient, db_session: AsyncSession, owner
):
    first = await login(async_client, owner.email)
    refresh = first.cookies[settings.REFRESH_TOKEN_COOKIE]
    async_client.cookies.clear()

    await db_session.execute(
        update(LoginSession)
        .where(LoginSession.principal_id == owner.id)
        .values(expires_at=utcnow() - timedelta(minutes=1))
    )
    await db_session.commit()

    resp = await async_client.post(f"{API}/auth/refresh", json={"refresh_token": refresh})
    assert resp.status_code == 401
    assert "expired" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_refresh_without_token(async_client: AsyncClient):
    resp = await async_client.post(f"{API}/auth/refresh")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_logout_deletes_session(async_client: AsyncClient, db_session: AsyncSession, owner):
    first = await login(async_client, owner.email)
    token = first.json()["access_token"]

    resp = await async_client.post(f"{API}/auth/logout", headers=bearer(token))
    assert resp.status_code == 200

    count = await db_session.scalar(select(func.count(LoginSession.id)))
    assert count == 0


# ── Profile / tenant switch ─────────────────────────────────────────
@pytest.mark.asyncio
async def test_me_returns_principal(async_client: AsyncClient, owner, owner_token):
    resp = await async_client.get(f"{API}/auth/me", headers=bearer(owner_token))

    assert resp.status_code == 200
    data = resp.json()
    assert data["id"] == owner.id
    assert data["principal_type"] == "user"
    assert data["tenant_id"] == owner.active_tenant_id


@pytest.mark.asyncio
async def test_user_without_membership_is_read_only(async_client: AsyncClient, db_session: AsyncSession):
    user = await make_user(db_session, email="loner@acme.test")

    resp = await login(async_client, user.email)
    assert resp.status_code == 200
    assert resp.json()["user"]["role"] == "READ_ONLY"
    assert "tenant_id" not in resp.json()["user"] or resp.json()["user"]["tenant_id"] is None


@pytest.mark.asyncio
async def test_switch_tenant(async_client: AsyncClient, db_session: AsyncSession, owner, tenant):
    other = await make_tenant(db_session, "Beta Co")
    db_session.add(TenantMembership(user_id=owner.id, tenant_id=other.id, role=Role.ACCOUNTANT.value))
    await db_session.commit()

    first = await login(async_client, owner.email, DEFAULT_PASSWORD)
    token = first.json()["access_token"]
    async_client.cookies.clear()

    switched = await async_client.post(
        f"{API}/auth/switch-tenant", json={"tenant_id": other.id}, headers=bearer(token)
    )
    assert switched.status_code == 200
    data = switched.json()
    assert data["user"]["tenant_id"] == other.id
    assert data["user"]["role"] == "ACCOUNTANT"

    sessions = await async_client.get(f"{API}/sessions", headers=bearer(data["access_token"]))
    assert sessions.json()["sessions"][0]["is_current"] is True

    forbidden = await async_client.post(
        f"{API}/auth/switch-tenant", json={"tenant_id": 9999}, headers=bearer(data["access_token"])
    )
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_seed_owner_is_idempotent(async_client: AsyncClient, session_factory):
    await seed_owner(session_factory)
    await seed_owner(session_factory)

    resp = await login(async_client, settings.FIRST_ADMIN_EMAIL, settings.FIRST_ADMIN_PASSWORD)
    assert resp.status_code == 200
    assert resp.json()["user"]["role"] == "OWNER"
    assert len(resp.json()["user"]["tenant_ids"]) == 1
