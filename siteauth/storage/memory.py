from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

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
    utcnow,
)


class MemoryStore:
    """In-process credential store for tests and local development.

    Every read returns a copy and every mutation happens under ``_data_lock``,
    so the read-modify-write steps (lockout counting, OTP consumption) are
    atomic with respect to other threads. When ``fs_root`` is given the state
    is mirrored to ``<fs_root>/state/memory_store.json`` after each write.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, PasswordRecord] = {}
        self.otps: Dict[Tuple[str, OtpPurpose], OtpRecord] = {}
        self.companies: Dict[str, Company] = {}
        self.memberships: Dict[str, CompanyMembership] = {}
        # RLock so helpers can re-enter while a caller already holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

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
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=new_id(),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                role=Role(role),
                phone_number=phone_number,
                company_id=company_id,
                supervisors_manager_id=supervisors_manager_id,
                flow_state=FlowState(flow_state),
                email_verified_at=email_verified_at,
                is_password_temporary=is_password_temporary,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return replace(account) if account else None

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - ACCOUNT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            for key, value in fields.items():
                setattr(account, key, value)
            account.updated_at = utcnow()
            self._persist_state()
            return replace(account)

    # -- credentials ------------------------------------------------------

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            now = utcnow()
            self.credentials[account_id] = PasswordRecord(
                account_id=account_id,
                password_hash=password_hash,
                password_algo=password_algo,
                updated_at=now,
            )
            account.last_password_change = now
            account.updated_at = now
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[PasswordRecord]:
        with self._data_lock:
            record = self.credentials.get(account_id)
            return replace(record) if record else None

    # -- lockout ----------------------------------------------------------

    def record_login_failure(
        self, account_id: str, policy: LockoutPolicy, now: datetime
    ) -> Optional[Tuple[LockoutDecision, Account]]:
        """Apply one failed attempt atomically and return the decision taken."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            decision = policy.evaluate(
                account.failed_login_attempts, account.lock_until, now
            )
            attempts, lock_until = policy.next_state(
                decision, account.failed_login_attempts, account.lock_until, now
            )
            account.failed_login_attempts = attempts
            account.lock_until = lock_until
            account.updated_at = now
            self._persist_state()
            return decision, replace(account)

    def reset_login_failures(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return
            if account.failed_login_attempts == 0 and account.lock_until is None:
                return
            account.failed_login_attempts = 0
            account.lock_until = None
            account.updated_at = utcnow()
            self._persist_state()

    # -- one-time codes ---------------------------------------------------

    def put_otp(self, record: OtpRecord) -> None:
        key = (record.email.strip().lower(), OtpPurpose(record.purpose))
        with self._data_lock:
            self.otps[key] = replace(record, email=key[0], purpose=key[1])
            self._persist_state()

    def get_otp(self, email: str, purpose: OtpPurpose) -> Optional[OtpRecord]:
        with self._data_lock:
            record = self.otps.get((email.strip().lower(), OtpPurpose(purpose)))
            return replace(record) if record else None

    def consume_otp(
        self, email: str, purpose: OtpPurpose, code_hash: str, now: datetime
    ) -> bool:
        """Delete the matching live code; only one caller can ever succeed."""
        key = (email.strip().lower(), OtpPurpose(purpose))
        with self._data_lock:
            record = self.otps.get(key)
            if record is None or record.code_hash != code_hash or not record.is_live(now):
                return False
            del self.otps[key]
            self._persist_state()
            return True

    def confirm_otp(
        self, email: str, purpose: OtpPurpose, code_hash: str, now: datetime
    ) -> bool:
        """Mark the matching live code confirmed; a second confirmation fails."""
        key = (email.strip().lower(), OtpPurpose(purpose))
        with self._data_lock:
            record = self.otps.get(key)
            if (
                record is None
                or record.code_hash != code_hash
                or not record.is_live(now)
                or record.confirmed_at is not None
            ):
                return False
            record.confirmed_at = now
            self._persist_state()
            return True

    def delete_otp(self, email: str, purpose: OtpPurpose) -> None:
        with self._data_lock:
            if self.otps.pop((email.strip().lower(), OtpPurpose(purpose)), None):
                self._persist_state()

    # -- tenancy ----------------------------------------------------------

    def create_company(self, name: str, **fields: Any) -> Company:
        with self._data_lock:
            company = Company(id=new_id(), name=name, **fields)
            self.companies[company.id] = company
            self._persist_state()
            return replace(company)

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._data_lock:
            company = self.companies.get(company_id)
            return replace(company) if company else None

    def add_membership(
        self, account_id: str, company_id: str, role: Role
    ) -> CompanyMembership:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for membership", {"account_id": account_id}
                )
            if company_id not in self.companies:
                raise ConstraintViolation(
                    "company not found for membership", {"company_id": company_id}
                )
            for existing in self.memberships.values():
                if existing.account_id == account_id and existing.company_id == company_id:
                    raise ConstraintViolation(
                        "membership already exists", {"field": "company_id"}
                    )
            membership = CompanyMembership(
                id=new_id(), account_id=account_id, company_id=company_id, role=Role(role)
            )
            self.memberships[membership.id] = membership
            self._persist_state()
            return replace(membership)

    def list_memberships(self, account_id: str) -> List[CompanyMembership]:
        with self._data_lock:
            found = [m for m in self.memberships.values() if m.account_id == account_id]
            return [replace(m) for m in sorted(found, key=lambda m: m.created_at)]

    def has_membership(self, account_id: str) -> bool:
        with self._data_lock:
            return any(m.account_id == account_id for m in self.memberships.values())

    def ping(self) -> bool:
        return True

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize(self, obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = self._serialize_datetime(value)
            elif isinstance(value, (Role, FlowState, OtpPurpose)):
                data[key] = value.value
        return data

    def _restore(self, data: dict, datetime_keys: tuple[str, ...]) -> dict:
        restored = dict(data)
        for key in datetime_keys:
            if key in restored:
                restored[key] = self._deserialize_datetime(restored[key])
        return restored

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize(a) for a in self.accounts.values()],
            "credentials": [self._serialize(c) for c in self.credentials.values()],
            "otps": [self._serialize(o) for o in self.otps.values()],
            "companies": [self._serialize(c) for c in self.companies.values()],
            "memberships": [self._serialize(m) for m in self.memberships.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        account_times = (
            "email_verified_at",
            "lock_until",
            "last_password_change",
            "created_at",
            "updated_at",
        )
        for raw in data.get("accounts", []):
            fields = self._restore(raw, account_times)
            fields["role"] = Role(fields["role"])
            fields["flow_state"] = FlowState(fields["flow_state"])
            account = Account(**fields)
            self.accounts[account.id] = account
        for raw in data.get("credentials", []):
            record = PasswordRecord(**self._restore(raw, ("updated_at",)))
            self.credentials[record.account_id] = record
        for raw in data.get("otps", []):
            fields = self._restore(raw, ("expires_at", "created_at", "confirmed_at"))
            fields["purpose"] = OtpPurpose(fields["purpose"])
            record = OtpRecord(**fields)
            self.otps[(record.email, record.purpose)] = record
        for raw in data.get("companies", []):
            company = Company(**self._restore(raw, ("created_at",)))
            self.companies[company.id] = company
        for raw in data.get("memberships", []):
            fields = self._restore(raw, ("created_at",))
            fields["role"] = Role(fields["role"])
            membership = CompanyMembership(**fields)
            self.memberships[membership.id] = membership
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True
