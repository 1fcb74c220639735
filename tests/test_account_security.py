import logging
import re
from datetime import timedelta
from types import SimpleNamespace

import pytest

from tenant_mongodb.errors import AccountLockedError, CodeExpiredError, CodeMismatchError, ValidationError
from tenant_mongodb.security.account_security import (
    CODE_EXPIRATION,
    LOCK_DURATION,
    MAX_FAILED_ATTEMPTS,
    MAX_PASSWORD_BYTES,
    AccountSecurity,
    CodeKind,
    check_password,
    generate_code,
    hash_password,
    is_password_hash,
)


def make_account(**overrides):
    fields = dict(
        password_hash=None,
        is_verified=False,
        verify_code=None,
        verify_code_expires_at=None,
        failed_login_attempts=0,
        lock_until=None,
        reset_code=None,
        reset_code_expires_at=None,
        last_login_at=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


@pytest.fixture
def security(clock):
    account = make_account()
    security = AccountSecurity(account, clock=clock)
    security.set_password("correct horse")
    security.pop_changes()
    return security


def test_constants():
    assert MAX_FAILED_ATTEMPTS == 5
    assert LOCK_DURATION == timedelta(minutes=15)
    assert CODE_EXPIRATION == timedelta(minutes=15)


def test_password_hash_round_trip():
    password_hash = hash_password("s3cret!")

    assert password_hash != "s3cret!"
    assert is_password_hash(password_hash)
    assert check_password("s3cret!", password_hash)
    assert not check_password("wrong", password_hash)


def test_hashes_are_salted():
    assert hash_password("same") != hash_password("same")


def test_check_password_never_raises_on_corrupt_hash():
    assert check_password("anything", "not-a-bcrypt-hash") is False
    assert check_password("anything", None) is False


def test_hash_password_rejects_empty():
    with pytest.raises(ValueError):
        hash_password("")


def test_hash_password_rejects_more_than_72_bytes():
    with pytest.raises(ValidationError):
        hash_password("x" * (MAX_PASSWORD_BYTES + 1))
    # multi-byte characters count by their UTF-8 length
    with pytest.raises(ValidationError):
        hash_password("\u00e9" * 37)
    assert is_password_hash(hash_password("x" * MAX_PASSWORD_BYTES))


def test_check_password_rejects_overlong_candidate_quietly(caplog):
    password_hash = hash_password("x" * MAX_PASSWORD_BYTES)

    with caplog.at_level(logging.WARNING, logger="tenant_mongodb"):
        assert check_password("x" * 80, password_hash) is False

    assert not any("malformed" in record.getMessage() for record in caplog.records)


def test_generated_codes_have_fixed_format():
    for _ in range(200):
        code = generate_code()
        assert re.match(r"^[1-9]\d{2}-[1-9]\d{2}$", code)


def test_set_password_records_change(clock):
    security = AccountSecurity(make_account(), clock=clock)

    security.set_password("pw")

    assert security.pop_changes() == {"password_hash"}
    assert security.verify_password("pw")
    assert security.pop_changes() == set()


def test_lockout_after_exactly_five_failures(security, clock):
    for attempt in range(1, MAX_FAILED_ATTEMPTS):
        assert security.authenticate("wrong") is False
        assert security.account.failed_login_attempts == attempt
        assert not security.is_locked()

    assert security.authenticate("wrong") is False
    assert security.is_locked()
    assert security.account.lock_until == clock.now + LOCK_DURATION

    with pytest.raises(AccountLockedError) as exc_info:
        security.authenticate("correct horse")
    assert exc_info.value.lock_until == clock.now + LOCK_DURATION


def test_attempts_during_lock_change_nothing(security, clock):
    for _ in range(MAX_FAILED_ATTEMPTS):
        security.authenticate("wrong")
    lock_until = security.account.lock_until

    clock.advance(timedelta(minutes=5))
    with pytest.raises(AccountLockedError):
        security.authenticate("wrong")

    assert security.account.failed_login_attempts == MAX_FAILED_ATTEMPTS
    assert security.account.lock_until == lock_until


def test_failure_after_lock_expiry_relocks(security, clock):
    for _ in range(MAX_FAILED_ATTEMPTS):
        security.authenticate("wrong")

    clock.advance(LOCK_DURATION)
    assert not security.is_locked()

    assert security.authenticate("wrong") is False
    assert security.account.failed_login_attempts == MAX_FAILED_ATTEMPTS + 1
    assert security.is_locked()


def test_success_resets_counters(security, clock):
    security.authenticate("wrong")
    security.authenticate("wrong")

    assert security.authenticate("correct horse") is True

    assert security.account.failed_login_attempts == 0
    assert security.account.lock_until is None
    assert security.account.last_login_at == clock.now


def test_unlock_clears_lock(security):
    for _ in range(MAX_FAILED_ATTEMPTS):
        security.authenticate("wrong")

    security.unlock()

    assert not security.is_locked()
    assert security.account.failed_login_attempts == 0
    assert security.authenticate("correct horse") is True


def test_verify_code_accepted_before_expiry(security, clock):
    code = security.issue_verify_code()
    assert security.account.verify_code_expires_at == clock.now + CODE_EXPIRATION

    clock.advance(CODE_EXPIRATION - timedelta(seconds=1))
    security.consume_verify_code(code)

    assert security.account.is_verified is True
    assert security.account.verify_code is None
    assert security.account.verify_code_expires_at is None


def test_code_rejected_at_exact_expiry(security, clock):
    code = security.issue_verify_code()

    clock.advance(CODE_EXPIRATION)
    with pytest.raises(CodeExpiredError) as exc_info:
        security.consume_verify_code(code)

    assert exc_info.value.kind == "verify"
    assert security.account.is_verified is False
    assert security.account.verify_code is None


def test_code_is_single_use(security):
    code = security.issue_verify_code()
    security.consume_verify_code(code)

    with pytest.raises(CodeMismatchError):
        security.consume_verify_code(code)


def test_wrong_code_is_mismatch_and_keeps_pending_code(security):
    code = security.issue_reset_code()
    wrong = "100-100" if code != "100-100" else "999-999"

    with pytest.raises(CodeMismatchError) as exc_info:
        security.consume_reset_code(wrong)

    assert exc_info.value.kind == "reset"
    security.consume_reset_code(code)
    assert security.account.is_verified is False


def test_malformed_candidate_is_mismatch(security):
    security.issue_verify_code()
    with pytest.raises(CodeMismatchError):
        security.consume_code(CodeKind.VERIFY, "123456")


def test_issue_overwrites_pending_code_of_same_kind(security, clock):
    first = security.issue_verify_code()
    reset = security.issue_reset_code()
    clock.advance(timedelta(minutes=1))
    second = security.issue_verify_code()

    assert security.account.verify_code == second
    assert security.account.verify_code_expires_at == clock.now + CODE_EXPIRATION
    assert security.account.reset_code == reset
    if first != second:
        with pytest.raises(CodeMismatchError):
            security.consume_verify_code(first)


def test_reset_code_rejected_after_expiry(security, clock):
    code = security.issue_reset_code()
    password_hash = security.account.password_hash

    clock.advance(CODE_EXPIRATION)
    with pytest.raises(CodeExpiredError) as exc_info:
        security.consume_reset_code(code)

    assert exc_info.value.kind == "reset"
    assert security.account.reset_code is None
    assert security.account.reset_code_expires_at is None
    assert security.account.password_hash == password_hash


def test_stored_instants_have_millisecond_precision(security, clock):
    clock.now = clock.now.replace(microsecond=123456)

    security.issue_verify_code()
    for _ in range(MAX_FAILED_ATTEMPTS):
        security.authenticate("wrong")

    assert security.account.verify_code_expires_at.microsecond == 123000
    assert security.account.lock_until.microsecond == 123000
    assert security.is_locked()
