"""
Two-factor module tests — TOTP matching, replay protection and backup
code consumption, exercised directly against the store.
"""

import time

import pyotp
import pytest
from sqlalchemy import select

from ledgerguard.core import two_factor as tfa
from ledgerguard.models.two_factor import BackupCode
from conftest import make_user


def test_backup_codes_are_formatted_and_unique():
    codes = tfa.generate_backup_codes()

    assert len(codes) == 10
    assert len(set(codes)) == 10
    for code in codes:
        left, right = code.split("-")
        assert len(left) == len(right) == 4
        assert code == code.upper()


def test_backup_code_hash_ignores_case_spaces_and_hyphens():
    assert tfa.hash_backup_code("ab12-cd34") == tfa.hash_backup_code(" AB12 CD34 ")
    assert tfa.hash_backup_code("AB12-CD34") != tfa.hash_backup_code("AB12-CD35")


def test_match_totp_step_accepts_drift_window_only():
    secret = tfa.generate_secret()
    totp = pyotp.TOTP(secret)
    now = time.time()
    step = int(now) // 30

    assert tfa.match_totp_step(secret, totp.at(now), now) == step
    assert tfa.match_totp_step(secret, totp.at(now - 30), now) == step - 1
    assert tfa.match_totp_step(secret, totp.at(now + 30), now) == step + 1
    assert tfa.match_totp_step(secret, totp.at(now + 90), now) is None
    assert tfa.match_totp_step(secret, "12ab56", now) is None
    assert tfa.match_totp_step(secret, "", now) is None


def test_match_totp_step_rejects_non_ascii_digits():
    secret = tfa.generate_secret()

    # Arabic-Indic digits pass str.isdigit() but are not a TOTP code.
    assert tfa.match_totp_step(secret, "١٢٣٤٥٦") is None
    assert tfa.match_totp_step(secret, "１２３４５６") is None


def test_provisioning_uri_names_issuer_and_account():
    uri = tfa.provisioning_uri(tfa.generate_secret(), "owner@acme.test")

    assert uri.startswith("otpauth://totp/")
    assert "issuer=LedgerGuard" in uri
    assert "owner%40acme.test" in uri


@pytest.mark.asyncio
async def test_setup_is_pending_until_first_code(db_session):
    user = await make_user(db_session)

    result = await tfa.begin_setup(db_session, user.id, user.email)
    config = await tfa.get_config(db_session, user.id)

    assert config.status == tfa.TwoFactorStatus.PENDING.value
    assert not await tfa.is_enabled(db_session, user.id)
    assert len(result.backup_codes) == 10

    assert await tfa.verify_code(db_session, config, pyotp.TOTP(result.secret).now())
    await tfa.enable(db_session, config)
    assert await tfa.is_enabled(db_session, user.id)


@pytest.mark.asyncio
async def test_totp_code_cannot_be_replayed(db_session):
    user = await make_user(db_session)
    result = await tfa.begin_setup(db_session, user.id, user.email)
    config = await tfa.get_config(db_session, user.id)
    totp = pyotp.TOTP(result.secret)
    now = time.time()

    code = totp.at(now)
    assert await tfa.verify_code(db_session, config, code, now=now)
    assert not await tfa.verify_code(db_session, config, code, now=now)
    # An older step is a replay as well.
    assert not await tfa.verify_code(db_session, config, totp.at(now - 30), now=now)
    # The next step is still fine.
    assert await tfa.verify_code(db_session, config, totp.at(now + 30), now=now)


@pytest.mark.asyncio
async def test_backup_code_is_single_use(db_session):
    user = await make_user(db_session)
    result = await tfa.begin_setup(db_session, user.id, user.email)
    first, second = result.backup_codes[:2]

    assert await tfa.consume_backup_code(db_session, user.id, first) == 9
    assert await tfa.consume_backup_code(db_session, user.id, first) is None
    assert await tfa.consume_backup_code(db_session, user.id, second.lower()) == 8
    assert await tfa.consume_backup_code(db_session, user.id, "ZZZZ-ZZZZ") is None
    assert await tfa.remaining_backup_codes(db_session, user.id) == 8


@pytest.mark.asyncio
async def test_regenerate_and_disable(db_session):
    user = await make_user(db_session)
    result = await tfa.begin_setup(db_session, user.id, user.email)

    fresh = await tfa.regenerate_backup_codes(db_session, user.id)
    assert set(fresh).isdisjoint(result.backup_codes)
    assert await tfa.consume_backup_code(db_session, user.id, result.backup_codes[0]) is None

    await tfa.disable(db_session, user.id)
    assert await tfa.get_config(db_session, user.id) is None
    remaining = (await db_session.execute(select(BackupCode).where(BackupCode.user_id == user.id))).all()
    assert remaining == []
