"""
Two-factor HTTP flow tests.

Verifies:
1. A pending setup is not enforced at login
2. Once enabled, password login returns only a temp token
3. The temp token is not a bearer credential
4. TOTP and backup codes both complete the login, backup codes once only
5. Disabling needs fresh proof
"""

import time

import pyotp
import pytest
from httpx import AsyncClient

from conftest import API, DEFAULT_PASSWORD, bearer, login


async def _enable(client: AsyncClient, token: str) -> tuple[pyotp.TOTP, list[str]]:
    setup = await client.post(f"{API}/auth/2fa/setup", headers=bearer(token))
    assert setup.status_code == 200, setup.text
    data = setup.json()
    assert data["otpauth_url"].startswith("otpauth://totp/")
    totp = pyotp.TOTP(data["secret"])

    confirm = await client.post(
        f"{API}/auth/2fa/verify",
        json={"code": totp.now(), "action": "setup"},
        headers=bearer(token),
    )
    assert confirm.status_code == 200, confirm.text
    return totp, data["backup_codes"]


async def _challenge(client: AsyncClient, email: str) -> str:
    resp = await login(client, email)
    assert resp.status_code == 200
    data = resp.json()
    assert data["requires_two_factor"] is True
    assert "access_token" not in data
    assert not resp.headers.get_list("set-cookie")
    return data["temp_token"]


@pytest.mark.asyncio
async def test_pending_setup_does_not_gate_login(async_client: AsyncClient, owner, owner_token):
    await async_client.post(f"{API}/auth/2fa/setup", headers=bearer(owner_token))

    status = await async_client.get(f"{API}/auth/2fa/status", headers=bearer(owner_token))
    assert status.json() == {"enabled": False, "pending": True, "backup_codes_remaining": 10}

    resp = await login(async_client, owner.email)
    assert resp.status_code == 200
    assert resp.json()["access_token"]


@pytest.mark.asyncio
async def test_setup_rejects_wrong_code(async_client: AsyncClient, owner_token):
    await async_client.post(f"{API}/auth/2fa/setup", headers=bearer(owner_token))

    resp = await async_client.post(
        f"{API}/auth/2fa/verify",
        json={"code": "000000", "action": "setup"},
        headers=bearer(owner_token),
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid verification code"


@pytest.mark.asyncio
async def test_login_requires_second_factor_once_enabled(async_client: AsyncClient, owner, owner_token):
    totp, _ = await _enable(async_client, owner_token)
    temp = await _challenge(async_client, owner.email)

    # The temp token cannot reach protected routes.
    me = await async_client.get(f"{API}/auth/me", headers=bearer(temp))
    assert me.status_code == 401

    missing = await async_client.post(f"{API}/auth/2fa/verify", json={"code": "123456"})
    assert missing.status_code == 401

    resp = await async_client.post(
        f"{API}/auth/2fa/verify",
        json={"code": totp.at(time.time() + 30), "temp_token": temp},
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["access_token"]
    assert data["user"]["email"] == owner.email

    me = await async_client.get(f"{API}/auth/me", headers=bearer(data["access_token"]))
    assert me.status_code == 200


@pytest.mark.asyncio
async def test_wrong_totp_counts_toward_password_lockout(async_client: AsyncClient, owner, owner_token):
    await _enable(async_client, owner_token)
    temp = await _challenge(async_client, owner.email)

    for _ in range(2):
        resp = await async_client.post(
            f"{API}/auth/2fa/verify", json={"code": "000000", "temp_token": temp}
        )
        assert resp.status_code == 401

    third = await async_client.post(f"{API}/auth/2fa/verify", json={"code": "000000", "temp_token": temp})
    assert third.status_code == 423

    # Password login is locked as well.
    assert (await login(async_client, owner.email)).status_code == 423


@pytest.mark.asyncio
async def test_backup_code_completes_login_once(async_client: AsyncClient, owner, owner_token):
    _, codes = await _enable(async_client, owner_token)
    temp = await _challenge(async_client, owner.email)

    first = await async_client.post(
        f"{API}/auth/2fa/backup", json={"code": codes[0].lower(), "temp_token": temp}
    )
    assert first.status_code == 200, first.text
    assert first.json()["backup_codes_remaining"] == 9
    assert first.json()["access_token"]
    async_client.cookies.clear()

    temp = await _challenge(async_client, owner.email)
    again = await async_client.post(f"{API}/auth/2fa/backup", json={"code": codes[0], "temp_token": temp})
    assert again.status_code == 401


@pytest.mark.asyncio
async def test_backup_code_from_settings(async_client: AsyncClient, owner_token):
    _, codes = await _enable(async_client, owner_token)

    resp = await async_client.post(
        f"{API}/auth/2fa/backup",
        json={"code": codes[3], "action": "settings"},
        headers=bearer(owner_token),
    )
    assert resp.status_code == 200
    assert resp.json()["backup_codes_remaining"] == 9

    bad = await async_client.post(
        f"{API}/auth/2fa/backup",
        json={"code": codes[3], "action": "settings"},
        headers=bearer(owner_token),
    )
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_setup_twice_conflicts(async_client: AsyncClient, owner_token):
    await _enable(async_client, owner_token)

    resp = await async_client.post(f"{API}/auth/2fa/setup", headers=bearer(owner_token))
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_disable_requires_proof(async_client: AsyncClient, owner, owner_token):
    await _enable(async_client, owner_token)

    no_proof = await async_client.post(f"{API}/auth/2fa/disable", json={}, headers=bearer(owner_token))
    assert no_proof.status_code == 422

    wrong = await async_client.post(
        f"{API}/auth/2fa/disable", json={"password": "nope"}, headers=bearer(owner_token)
    )
    assert wrong.status_code == 400

    ok = await async_client.post(
        f"{API}/auth/2fa/disable", json={"password": DEFAULT_PASSWORD}, headers=bearer(owner_token)
    )
    assert ok.status_code == 200

    resp = await login(async_client, owner.email)
    assert resp.json()["access_token"]


@pytest.mark.asyncio
async def test_disable_proof_counts_toward_password_lockout(async_client: AsyncClient, owner, owner_token):
    await _enable(async_client, owner_token)

    statuses = [
        (
            await async_client.post(
                f"{API}/auth/2fa/disable", json={"password": "guess"}, headers=bearer(owner_token)
            )
        ).status_code
        for _ in range(3)
    ]
    assert statuses == [400, 400, 423]

    # Locked: even the right password is refused, here and at login.
    ok = await async_client.post(
        f"{API}/auth/2fa/disable", json={"password": DEFAULT_PASSWORD}, headers=bearer(owner_token)
    )
    assert ok.status_code == 423
    assert (await login(async_client, owner.email)).status_code == 423


@pytest.mark.asyncio
async def test_regenerate_wrong_code_counts_toward_password_lockout(async_client: AsyncClient, owner_token):
    await _enable(async_client, owner_token)

    statuses = [
        (
            await async_client.post(
                f"{API}/auth/2fa/backup-codes/regenerate", json={"code": "000000"}, headers=bearer(owner_token)
            )
        ).status_code
        for _ in range(3)
    ]
    assert statuses == [400, 400, 423]


@pytest.mark.asyncio
async def test_non_ascii_digits_are_a_bad_request(async_client: AsyncClient, owner_token):
    await async_client.post(f"{API}/auth/2fa/setup", headers=bearer(owner_token))

    resp = await async_client.post(
        f"{API}/auth/2fa/verify",
        json={"code": "١٢٣٤٥٦", "action": "setup"},
        headers=bearer(owner_token),
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid verification code"
