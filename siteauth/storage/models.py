from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    PROJECT_MANAGER = "project_manager"
    PROJECT_SUPERVISOR = "project_supervisor"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


SELF_REGISTER_ROLES = frozenset({Role.PROJECT_MANAGER, Role.PROJECT_SUPERVISOR})


class FlowState(str, Enum):
    """Which one-time-code flow an account expects next.

    ``unverified`` waits for email verification, ``pending_reset`` waits for a
    password reset, ``active`` expects neither.
    """

    UNVERIFIED = "unverified"
    PENDING_RESET = "pending_reset"
    ACTIVE = "active"


class OtpPurpose(str, Enum):
    VERIFY_EMAIL = "verify_email"
    RESET_PASSWORD = "reset_password"


@dataclass
class Account:
    id: str
    email: str
    first_name: str
    last_name: str
    role: Role = Role.PROJECT_MANAGER
    phone_number: Optional[str] = None
    company_id: Optional[str] = None
    supervisors_manager_id: Optional[str] = None
    flow_state: FlowState = FlowState.UNVERIFIED
    email_verified_at: Optional[datetime] = None
    is_password_temporary: bool = False
    failed_login_attempts: int = 0
    lock_until: Optional[datetime] = None
    is_deleted: bool = False
    device_token: Optional[str] = None
    last_password_change: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_email_verified(self) -> bool:
        return self.email_verified_at is not None

    @property
    def is_reset_password(self) -> bool:
        return self.flow_state == FlowState.PENDING_RESET

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def expected_otp_purpose(self) -> OtpPurpose:
        if self.flow_state == FlowState.PENDING_RESET:
            return OtpPurpose.RESET_PASSWORD
        return OtpPurpose.VERIFY_EMAIL


@dataclass
class PasswordRecord:
    account_id: str
    password_hash: str
    password_algo: str = "argon2id"
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class OtpRecord:
    email: str
    purpose: OtpPurpose
    code_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class Company:
    id: str
    name: str
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone_number: Optional[str] = None
    logo_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CompanyMembership:
    id: str
    account_id: str
    company_id: str
    role: Role
    created_at: datetime = field(default_factory=utcnow)


# Columns callers may change through ``update_account``
ACCOUNT_MUTABLE_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "role",
        "phone_number",
        "company_id",
        "supervisors_manager_id",
        "flow_state",
        "email_verified_at",
        "is_password_temporary",
        "failed_login_attempts",
        "lock_until",
        "is_deleted",
        "device_token",
        "last_password_change",
    }
)
