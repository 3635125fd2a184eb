from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from siteauth.logging import get_logger
from siteauth.service.lockout import IncrementOnly, LockoutPolicy, ShouldLock
from siteauth.storage.errors import ConstraintViolation
from siteauth.storage.models import FlowState, OtpPurpose, Role
from siteauth.storage.postgres import PostgresStore

NOW = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
ACCOUNT_ID = "5f1f6a36-2c1e-4a38-8f43-36f8cf0f6b2e"


def _account_row(**overrides):
    row = {
        "id": ACCOUNT_ID,
        "email": "pm@example.com",
        "first_name": "Pat",
        "last_name": "Mason",
        "role": "project_manager",
        "phone_number": None,
        "company_id": None,
        "supervisors_manager_id": None,
        "flow_state": "active",
        "email_verified_at": NOW,
        "is_password_temporary": False,
        "failed_login_attempts": 0,
        "lock_until": None,
        "is_deleted": False,
        "device_token": None,
        "last_password_change": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class _Result:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class ScriptedConnection:
    """Replays queued results (or raises queued errors) in call order."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    def execute(self, sql, params=None):
        self.calls.append((" ".join(sql.split()), params))
        if not self.script:
            return _Result([])
        outcome = self.script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return _Result(outcome)


class ScriptedPool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(script):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = ScriptedConnection(script)
    store.pool = ScriptedPool(conn)
    store.dsn = "postgresql://stub"
    store.logger = get_logger("test")
    return store, conn


def test_get_account_skips_query_for_non_uuid():
    store, conn = _store([])
    assert store.get_account("not-a-uuid") is None
    assert conn.calls == []


def test_get_account_maps_row():
    store, conn = _store([[_account_row(role="project_supervisor")]])
    account = store.get_account(ACCOUNT_ID)
    assert account.id == ACCOUNT_ID
    assert account.role == Role.PROJECT_SUPERVISOR
    assert account.is_email_verified


def test_create_account_unique_violation_maps_to_constraint():
    store, _ = _store([errors.UniqueViolation("duplicate key")])
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account("pm@example.com", "Pat", "Mason")
    assert excinfo.value.detail == {"field": "email"}


def test_create_account_lowercases_email():
    store, conn = _store([[_account_row()]])
    store.create_account(" PM@Example.com ", "Pat", "Mason")
    _, params = conn.calls[0]
    assert params[1] == "pm@example.com"


def test_update_account_rejects_unknown_fields():
    store, _ = _store([])
    with pytest.raises(ValueError):
        store.update_account(ACCOUNT_ID, email="x@example.com")


def test_update_account_serializes_enums():
    store, conn = _store([[_account_row(flow_state="pending_reset")]])
    account = store.update_account(ACCOUNT_ID, flow_state=FlowState.PENDING_RESET)
    sql, params = conn.calls[0]
    assert "flow_state = %s" in sql
    assert params == ("pending_reset", ACCOUNT_ID)
    assert account.flow_state == FlowState.PENDING_RESET


def test_record_login_failure_increments_with_guarded_update():
    store, conn = _store(
        [
            [{"failed_login_attempts": 1, "lock_until": None}],
            [_account_row(failed_login_attempts=2)],
        ]
    )
    decision, account = store.record_login_failure(ACCOUNT_ID, LockoutPolicy(), NOW)
    assert isinstance(decision, IncrementOnly)
    assert account.failed_login_attempts == 2
    sql, params = conn.calls[1]
    assert "failed_login_attempts = %s AND lock_until IS NOT DISTINCT FROM %s" in sql
    assert params == (2, None, ACCOUNT_ID, 1, None)


def test_record_login_failure_retries_after_lost_race():
    lock_until = NOW + timedelta(minutes=15)
    store, conn = _store(
        [
            [{"failed_login_attempts": 3, "lock_until": None}],
            [],  # another request won the update
            [{"failed_login_attempts": 4, "lock_until": None}],
            [_account_row(failed_login_attempts=5, lock_until=lock_until)],
        ]
    )
    decision, account = store.record_login_failure(ACCOUNT_ID, LockoutPolicy(), NOW)
    assert isinstance(decision, ShouldLock)
    assert account.lock_until == lock_until
    assert len(conn.calls) == 4
    assert conn.calls[3][1][:2] == (5, lock_until)


def test_record_login_failure_gives_up_when_contention_never_ends():
    script = []
    for _ in range(16):
        script.extend([[{"failed_login_attempts": 0, "lock_until": None}], []])
    store, _ = _store(script)
    with pytest.raises(RuntimeError):
        store.record_login_failure(ACCOUNT_ID, LockoutPolicy(), NOW)


def test_record_login_failure_unknown_account():
    store, _ = _store([[]])
    assert store.record_login_failure(ACCOUNT_ID, LockoutPolicy(), NOW) is None


def test_consume_otp_is_a_single_delete():
    store, conn = _store([[{"email": "pm@example.com"}], []])
    assert store.consume_otp("PM@example.com", OtpPurpose.VERIFY_EMAIL, "h", NOW) is True
    assert store.consume_otp("pm@example.com", OtpPurpose.VERIFY_EMAIL, "h", NOW) is False
    sql, params = conn.calls[0]
    assert sql.startswith("DELETE FROM one_time_code")
    assert "RETURNING" in sql
    assert params == ("pm@example.com", "verify_email", "h", NOW)


def test_confirm_otp_requires_unconfirmed_row():
    store, conn = _store([[{"email": "pm@example.com"}]])
    assert store.confirm_otp("pm@example.com", OtpPurpose.RESET_PASSWORD, "h", NOW)
    sql, _ = conn.calls[0]
    assert "confirmed_at IS NULL" in sql


def test_add_membership_duplicate_maps_to_field():
    store, _ = _store([errors.UniqueViolation("duplicate key")])
    with pytest.raises(ConstraintViolation) as excinfo:
        store.add_membership(ACCOUNT_ID, ACCOUNT_ID, Role.PROJECT_MANAGER)
    assert excinfo.value.detail == {"field": "company_id"}


def test_save_password_missing_account():
    store, _ = _store([errors.ForeignKeyViolation("fk")])
    with pytest.raises(ConstraintViolation):
        store.save_password(ACCOUNT_ID, "hash")
