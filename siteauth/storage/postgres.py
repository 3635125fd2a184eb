from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from siteauth.logging import get_logger
from siteauth.service.lockout import LockoutDecision, LockoutPolicy
from siteauth.storage.errors import ConstraintViolation
from siteauth.storage.models import (
    ACCOUNT_MUTABLE_FIELDS,
    Account,
    Company,
    CompanyMembership,
    FlowState,
    OtpPurpose,
    OtpRecord,
    PasswordRecord,
    Role,
    new_id,
)

# Retries for the lockout compare-and-swap before giving up
_MAX_CAS_ATTEMPTS = 16

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL,
        phone_number TEXT,
        company_id UUID,
        supervisors_manager_id UUID REFERENCES account(id),
        flow_state TEXT NOT NULL DEFAULT 'unverified',
        email_verified_at TIMESTAMPTZ,
        is_password_temporary BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_attempts >= 0),
        lock_until TIMESTAMPTZ,
        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        device_token TEXT,
        last_password_change TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id UUID PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS one_time_code (
        email TEXT NOT NULL,
        purpose TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        confirmed_at TIMESTAMPTZ,
        PRIMARY KEY (email, purpose)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS company (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        address TEXT,
        city TEXT,
        state TEXT,
        zip_code TEXT,
        phone_number TEXT,
        logo_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS company_membership (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        company_id UUID NOT NULL REFERENCES company(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (account_id, company_id)
    )
    """,
]

_ACCOUNT_COLUMNS = (
    "id, email, first_name, last_name, role, phone_number, company_id, "
    "supervisors_manager_id, flow_state, email_verified_at, is_password_temporary, "
    "failed_login_attempts, lock_until, is_deleted, device_token, "
    "last_password_change, created_at, updated_at"
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed credential store on a psycopg connection pool."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=Role(row["role"]),
            phone_number=row.get("phone_number"),
            company_id=str(row["company_id"]) if row.get("company_id") else None,
            supervisors_manager_id=(
                str(row["supervisors_manager_id"])
                if row.get("supervisors_manager_id")
                else None
            ),
            flow_state=FlowState(row["flow_state"]),
            email_verified_at=row.get("email_verified_at"),
            is_password_temporary=bool(row.get("is_password_temporary")),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            lock_until=row.get("lock_until"),
            is_deleted=bool(row.get("is_deleted")),
            device_token=row.get("device_token"),
            last_password_change=row.get("last_password_change"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _otp_from_row(row: dict) -> OtpRecord:
        return OtpRecord(
            email=row["email"],
            purpose=OtpPurpose(row["purpose"]),
            code_hash=row["code_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            confirmed_at=row.get("confirmed_at"),
        )

    @staticmethod
    def _company_from_row(row: dict) -> Company:
        return Company(
            id=str(row["id"]),
            name=row["name"],
            address=row.get("address"),
            city=row.get("city"),
            state=row.get("state"),
            zip_code=row.get("zip_code"),
            phone_number=row.get("phone_number"),
            logo_url=row.get("logo_url"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _membership_from_row(row: dict) -> CompanyMembership:
        return CompanyMembership(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            company_id=str(row["company_id"]),
            role=Role(row["role"]),
            created_at=row["created_at"],
        )

    # -- accounts ---------------------------------------------------------

    def create_account(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        role: Role = Role.PROJECT_MANAGER,
        phone_number: Optional[str] = None,
        company_id: Optional[str] = None,
        supervisors_manager_id: Optional[str] = None,
        flow_state: FlowState = FlowState.UNVERIFIED,
        email_verified_at: Optional[datetime] = None,
        is_password_temporary: bool = False,
    ) -> Account:
        account_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO account (
                        id, email, first_name, last_name, role, phone_number, company_id,
                        supervisors_manager_id, flow_state, email_verified_at, is_password_temporary
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        account_id,
                        email.strip().lower(),
                        first_name,
                        last_name,
                        Role(role).value,
                        phone_number,
                        company_id,
                        supervisors_manager_id,
                        FlowState(flow_state).value,
                        email_verified_at,
                        is_password_temporary,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE email = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - ACCOUNT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown account fields: {sorted(unknown)}")
        if not fields:
            return self.get_account(account_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params: List[Any] = [
            value.value if isinstance(value, (Role, FlowState)) else value
            for value in fields.values()
        ]
        params.append(account_id)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE account SET {assignments}, updated_at = now()
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                tuple(params),
            ).fetchone()
        return self._account_from_row(row) if row else None

    # -- credentials ------------------------------------------------------

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
                conn.execute(
                    "UPDATE account SET last_password_change = now(), updated_at = now() WHERE id = %s",
                    (account_id,),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[PasswordRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT account_id, password_hash, password_algo, updated_at
                FROM account_credential WHERE account_id = %s
                """,
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return PasswordRecord(
            account_id=str(row["account_id"]),
            password_hash=str(row["password_hash"]),
            password_algo=str(row["password_algo"]),
            updated_at=row["updated_at"],
        )

    # -- lockout ----------------------------------------------------------

    def record_login_failure(
        self, account_id: str, policy: LockoutPolicy, now: datetime
    ) -> Optional[Tuple[LockoutDecision, Account]]:
        """Apply one failed attempt with an optimistic compare-and-swap.

        The row is only written if ``failed_login_attempts`` and ``lock_until``
        still hold the values the decision was computed from; a lost race
        re-reads and re-evaluates.
        """
        for _ in range(_MAX_CAS_ATTEMPTS):
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT failed_login_attempts, lock_until FROM account WHERE id = %s",
                    (account_id,),
                ).fetchone()
                if not row:
                    return None
                attempts = int(row["failed_login_attempts"] or 0)
                lock_until = row["lock_until"]
                decision = policy.evaluate(attempts, lock_until, now)
                new_attempts, new_lock = policy.next_state(
                    decision, attempts, lock_until, now
                )
                updated = conn.execute(
                    f"""
                    UPDATE account
                    SET failed_login_attempts = %s, lock_until = %s, updated_at = now()
                    WHERE id = %s
                      AND failed_login_attempts = %s
                      AND lock_until IS NOT DISTINCT FROM %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (new_attempts, new_lock, account_id, attempts, lock_until),
                ).fetchone()
            if updated:
                return decision, self._account_from_row(updated)
            self.logger.debug("login_failure_cas_retry", account_id=account_id)
        raise RuntimeError("lockout counter update did not converge")

    def reset_login_failures(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET failed_login_attempts = 0, lock_until = NULL, updated_at = now()
                WHERE id = %s AND (failed_login_attempts <> 0 OR lock_until IS NOT NULL)
                """,
                (account_id,),
            )

    # -- one-time codes ---------------------------------------------------

    def put_otp(self, record: OtpRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO one_time_code (email, purpose, code_hash, expires_at, created_at, confirmed_at)
                VALUES (%s, %s, %s, %s, %s, NULL)
                ON CONFLICT (email, purpose) DO UPDATE
                SET code_hash = EXCLUDED.code_hash,
                    expires_at = EXCLUDED.expires_at,
                    created_at = EXCLUDED.created_at,
                    confirmed_at = NULL
                """,
                (
                    record.email.strip().lower(),
                    OtpPurpose(record.purpose).value,
                    record.code_hash,
                    record.expires_at,
                    record.created_at,
                ),
            )

    def get_otp(self, email: str, purpose: OtpPurpose) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT email, purpose, code_hash, expires_at, created_at, confirmed_at
                FROM one_time_code WHERE email = %s AND purpose = %s
                """,
                (email.strip().lower(), OtpPurpose(purpose).value),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def consume_otp(
        self, email: str, purpose: OtpPurpose, code_hash: str, now: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM one_time_code
                WHERE email = %s AND purpose = %s AND code_hash = %s AND expires_at > %s
                RETURNING email
                """,
                (email.strip().lower(), OtpPurpose(purpose).value, code_hash, now),
            ).fetchone()
        return row is not None

    def confirm_otp(
        self, email: str, purpose: OtpPurpose, code_hash: str, now: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_code SET confirmed_at = %s
                WHERE email = %s AND purpose = %s AND code_hash = %s
                  AND expires_at > %s AND confirmed_at IS NULL
                RETURNING email
                """,
                (now, email.strip().lower(), OtpPurpose(purpose).value, code_hash, now),
            ).fetchone()
        return row is not None

    def delete_otp(self, email: str, purpose: OtpPurpose) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM one_time_code WHERE email = %s AND purpose = %s",
                (email.strip().lower(), OtpPurpose(purpose).value),
            )

    # -- tenancy ----------------------------------------------------------

    def create_company(self, name: str, **fields: Any) -> Company:
        company_id = new_id()
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO company (id, name, address, city, state, zip_code, phone_number, logo_url)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id, name, address, city, state, zip_code, phone_number, logo_url, created_at
                """,
                (
                    company_id,
                    name,
                    fields.get("address"),
                    fields.get("city"),
                    fields.get("state"),
                    fields.get("zip_code"),
                    fields.get("phone_number"),
                    fields.get("logo_url"),
                ),
            ).fetchone()
        return self._company_from_row(row)

    def get_company(self, company_id: str) -> Optional[Company]:
        if not _is_uuid(company_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, name, address, city, state, zip_code, phone_number, logo_url, created_at
                FROM company WHERE id = %s
                """,
                (company_id,),
            ).fetchone()
        return self._company_from_row(row) if row else None

    def add_membership(
        self, account_id: str, company_id: str, role: Role
    ) -> CompanyMembership:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO company_membership (id, account_id, company_id, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id, account_id, company_id, role, created_at
                    """,
                    (new_id(), account_id, company_id, Role(role).value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("membership already exists", {"field": "company_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account or company not found for membership",
                {"account_id": account_id, "company_id": company_id},
            )
        return self._membership_from_row(row)

    def list_memberships(self, account_id: str) -> List[CompanyMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, account_id, company_id, role, created_at
                FROM company_membership WHERE account_id = %s ORDER BY created_at
                """,
                (account_id,),
            ).fetchall()
        return [self._membership_from_row(row) for row in rows]

    def has_membership(self, account_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM company_membership WHERE account_id = %s LIMIT 1",
                (account_id,),
            ).fetchone()
        return row is not None
