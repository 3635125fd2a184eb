"""Tests for the in-process credential store."""

import threading
from datetime import timedelta

import pytest

from siteauth.service.lockout import IncrementOnly, Locked, LockoutPolicy, ShouldLock
from siteauth.storage.errors import ConstraintViolation
from siteauth.storage.memory import MemoryStore
from siteauth.storage.models import FlowState, OtpPurpose, OtpRecord, Role


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def account(store):
    return store.create_account("Foreman@Example.com", "Fran", "Ortiz")


def test_create_account_normalizes_email_and_defaults(account):
    assert account.email == "foreman@example.com"
    assert account.role == Role.PROJECT_MANAGER
    assert account.flow_state == FlowState.UNVERIFIED
    assert account.is_email_verified is False
    assert account.failed_login_attempts == 0


def test_duplicate_email_is_a_constraint_violation(store, account):
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account("FOREMAN@example.com", "Other", "Person")
    assert excinfo.value.detail == {"field": "email"}


def test_lookup_by_email_ignores_case(store, account):
    assert store.get_account_by_email(" FOREMAN@EXAMPLE.COM ").id == account.id
    assert store.get_account_by_email("nobody@example.com") is None


def test_reads_return_copies(store, account):
    loaded = store.get_account(account.id)
    loaded.first_name = "Changed"
    assert store.get_account(account.id).first_name == "Fran"


def test_update_account_rejects_unknown_fields(store, account):
    with pytest.raises(ValueError):
        store.update_account(account.id, email="new@example.com")
    updated = store.update_account(account.id, flow_state=FlowState.ACTIVE)
    assert updated.flow_state == FlowState.ACTIVE
    assert store.update_account("missing", flow_state=FlowState.ACTIVE) is None


def test_save_password_replaces_previous_record(store, account):
    store.save_password(account.id, "hash-one")
    store.save_password(account.id, "hash-two")
    record = store.get_password_record(account.id)
    assert record.password_hash == "hash-two"
    assert record.password_algo == "argon2id"
    assert store.get_account(account.id).last_password_change is not None


def test_save_password_for_missing_account(store):
    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash")


def test_login_failures_lock_then_reset(store, account, clock):
    policy = LockoutPolicy(max_attempts=3, lock_duration=timedelta(minutes=15))
    decisions = [
        store.record_login_failure(account.id, policy, clock())[0] for _ in range(4)
    ]
    assert isinstance(decisions[0], IncrementOnly)
    assert isinstance(decisions[1], IncrementOnly)
    assert isinstance(decisions[2], ShouldLock)
    assert isinstance(decisions[3], Locked)
    locked = store.get_account(account.id)
    assert locked.failed_login_attempts == 3
    assert locked.lock_until == clock() + timedelta(minutes=15)

    store.reset_login_failures(account.id)
    cleared = store.get_account(account.id)
    assert cleared.failed_login_attempts == 0
    assert cleared.lock_until is None


def test_record_login_failure_for_missing_account(store, clock):
    assert store.record_login_failure("missing", LockoutPolicy(), clock()) is None


def test_concurrent_failures_are_counted_exactly(store, account, clock):
    policy = LockoutPolicy(max_attempts=100, lock_duration=timedelta(minutes=15))
    barrier = threading.Barrier(10)

    def _fail():
        barrier.wait()
        for _ in range(5):
            store.record_login_failure(account.id, policy, clock())

    threads = [threading.Thread(target=_fail) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.get_account(account.id).failed_login_attempts == 50


def test_concurrent_failures_at_threshold_lock_once(store, account, clock):
    policy = LockoutPolicy(max_attempts=5, lock_duration=timedelta(minutes=15))
    results = []
    barrier = threading.Barrier(8)

    def _fail():
        barrier.wait()
        decision, _ = store.record_login_failure(account.id, policy, clock())
        results.append(decision)

    threads = [threading.Thread(target=_fail) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sum(isinstance(d, ShouldLock) for d in results) == 1
    assert sum(isinstance(d, IncrementOnly) for d in results) == 4
    assert sum(isinstance(d, Locked) for d in results) == 3
    assert store.get_account(account.id).failed_login_attempts == 5


def test_otp_consume_checks_hash_and_expiry(store, clock):
    record = OtpRecord(
        email="Crew@Example.com",
        purpose=OtpPurpose.VERIFY_EMAIL,
        code_hash="abc",
        expires_at=clock() + timedelta(minutes=10),
    )
    store.put_otp(record)
    assert store.consume_otp("crew@example.com", OtpPurpose.VERIFY_EMAIL, "wrong", clock()) is False
    assert store.consume_otp("crew@example.com", OtpPurpose.RESET_PASSWORD, "abc", clock()) is False
    assert store.consume_otp("crew@example.com", OtpPurpose.VERIFY_EMAIL, "abc", clock()) is True
    assert store.get_otp("crew@example.com", OtpPurpose.VERIFY_EMAIL) is None


def test_otp_confirm_marks_once(store, clock):
    store.put_otp(
        OtpRecord(
            email="crew@example.com",
            purpose=OtpPurpose.RESET_PASSWORD,
            code_hash="abc",
            expires_at=clock() + timedelta(minutes=10),
        )
    )
    assert store.confirm_otp("crew@example.com", OtpPurpose.RESET_PASSWORD, "abc", clock())
    assert not store.confirm_otp("crew@example.com", OtpPurpose.RESET_PASSWORD, "abc", clock())
    assert store.get_otp("crew@example.com", OtpPurpose.RESET_PASSWORD).confirmed_at == clock()


def test_memberships(store, account):
    company = store.create_company("Ortiz Builders", city="Austin")
    assert store.has_membership(account.id) is False
    store.add_membership(account.id, company.id, Role.PROJECT_MANAGER)
    assert store.has_membership(account.id) is True
    with pytest.raises(ConstraintViolation) as excinfo:
        store.add_membership(account.id, company.id, Role.PROJECT_MANAGER)
    assert excinfo.value.detail == {"field": "company_id"}
    with pytest.raises(ConstraintViolation):
        store.add_membership(account.id, "missing", Role.PROJECT_MANAGER)
    assert [m.company_id for m in store.list_memberships(account.id)] == [company.id]


def test_state_survives_restart(tmp_path, clock):
    store = MemoryStore(fs_root=str(tmp_path))
    account = store.create_account("persist@example.com", "Per", "Sist")
    store.save_password(account.id, "hash")
    store.record_login_failure(account.id, LockoutPolicy(), clock())
    store.put_otp(
        OtpRecord(
            email=account.email,
            purpose=OtpPurpose.VERIFY_EMAIL,
            code_hash="abc",
            expires_at=clock() + timedelta(minutes=10),
        )
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))
    restored = reloaded.get_account(account.id)
    assert restored.email == "persist@example.com"
    assert restored.failed_login_attempts == 1
    assert reloaded.get_password_record(account.id).password_hash == "hash"
    assert reloaded.get_otp(account.email, OtpPurpose.VERIFY_EMAIL).code_hash == "abc"


def test_store_without_root_writes_nothing(tmp_path, monkeypatch, clock):
    monkeypatch.chdir(tmp_path)
    store = MemoryStore()
    account = store.create_account("ephemeral@example.com", "Eph", "Emeral")
    store.record_login_failure(account.id, LockoutPolicy(), clock())
    assert store.fs_root is None
    assert list(tmp_path.iterdir()) == []
