from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from siteauth.logging import get_logger
from siteauth.service.email import EmailService
from siteauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    BadRequestError,
    ConflictError,
    EmailDeliveryError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
)
from siteauth.service.lockout import Locked, LockoutPolicy, ShouldLock
from siteauth.service.otp import OtpIssuer
from siteauth.service.passwords import PasswordHasher
from siteauth.service.tenancy import TenancyDirectory
from siteauth.service.tokens import TokenIssuer, TokenPair, TokenPurpose
from siteauth.storage.errors import ConstraintViolation
from siteauth.storage.models import (
    SELF_REGISTER_ROLES,
    Account,
    FlowState,
    OtpPurpose,
    Role,
    utcnow,
)

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "invalid credentials"


@dataclass
class Registration:
    account: Account
    verification_token: str
    otp_expires_at: datetime
    otp: Optional[str] = None


@dataclass
class LoginResult:
    account: Account
    tokens: TokenPair
    is_setup_complete: bool


@dataclass
class VerificationResult:
    account: Account
    tokens: TokenPair


@dataclass
class OtpDispatch:
    email: str
    purpose: OtpPurpose
    token: str
    expires_at: datetime
    otp: Optional[str] = None


@dataclass
class ProvisionedAccount:
    account: Account
    temporary_password: Optional[str] = None


class AuthService:
    """Account lifecycle: registration, login, verification and password flows.

    Every operation that changes credentials or counters goes through the
    store's atomic primitives (``record_login_failure``, ``consume_otp``,
    ``confirm_otp``) so concurrent requests cannot double-spend a code or
    under-count failed logins. One-time codes are echoed in results only
    outside production.
    """

    def __init__(
        self,
        store,
        *,
        passwords: PasswordHasher,
        otp: OtpIssuer,
        tokens: TokenIssuer,
        lockout: LockoutPolicy,
        tenancy: TenancyDirectory,
        notifier: EmailService,
        expose_codes: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.otp = otp
        self.tokens = tokens
        self.lockout = lockout
        self.tenancy = tenancy
        self.notifier = notifier
        self.expose_codes = expose_codes
        self._clock = clock

    # -- helpers ----------------------------------------------------------

    def _live_account_by_email(self, email: str) -> Account:
        account = self.store.get_account_by_email(email)
        if account is None or account.is_deleted:
            raise NotFoundError("account not found")
        return account

    def _live_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None or account.is_deleted:
            raise NotFoundError("account not found")
        return account

    def _visible(self, secret: str) -> Optional[str]:
        return secret if self.expose_codes else None

    @staticmethod
    def _locked_error(remaining: timedelta) -> AccountLockedError:
        return AccountLockedError(
            "account is temporarily locked",
            detail={"retry_after_seconds": max(1, math.ceil(remaining.total_seconds()))},
        )

    async def _notify(self, send: Callable[..., bool], *args, critical: bool = False) -> bool:
        try:
            delivered = await asyncio.to_thread(send, *args)
        except EmailDeliveryError:
            if critical:
                raise
            logger.warning("notification_failed", channel=send.__name__)
            return False
        if not delivered:
            logger.warning("notification_not_delivered", channel=send.__name__)
        return delivered

    async def _dispatch_code(self, account: Account, purpose: OtpPurpose) -> OtpDispatch:
        token = self.tokens.issue_single_use(account, TokenPurpose(purpose.value))
        issue = self.otp.issue(account.email, purpose)
        if purpose == OtpPurpose.RESET_PASSWORD:
            await self._notify(
                self.notifier.send_reset_password_email, account.email, issue.code, critical=True
            )
        else:
            await self._notify(
                self.notifier.send_verification_email, account.email, issue.code, critical=True
            )
        return OtpDispatch(
            email=account.email,
            purpose=purpose,
            token=token,
            expires_at=issue.expires_at,
            otp=self._visible(issue.code),
        )

    # -- registration -----------------------------------------------------

    async def register(
        self,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: Role = Role.PROJECT_MANAGER,
        phone_number: Optional[str] = None,
        company_id: Optional[str] = None,
        supervisors_manager_id: Optional[str] = None,
    ) -> Registration:
        role = Role(role)
        if role not in SELF_REGISTER_ROLES:
            raise BadRequestError("role cannot self-register", detail={"role": role.value})
        if role != Role.PROJECT_SUPERVISOR:
            supervisors_manager_id = None

        # Validate references before anything is written
        company = None
        if company_id:
            company = self.tenancy.get_company(company_id)
            if company is None:
                raise BadRequestError("company not found", detail={"company_id": company_id})
            if role == Role.PROJECT_SUPERVISOR and not supervisors_manager_id:
                raise BadRequestError(
                    "supervisors_manager_id is required for supervisors",
                    detail={"field": "supervisors_manager_id"},
                )
        if supervisors_manager_id:
            manager = self.store.get_account(supervisors_manager_id)
            if manager is None or manager.is_deleted or manager.role != Role.PROJECT_MANAGER:
                raise BadRequestError(
                    "supervisor manager not found",
                    detail={"supervisors_manager_id": supervisors_manager_id},
                )

        password_hash = self.passwords.hash(password)
        existing = self.store.get_account_by_email(email)
        if existing is not None:
            if existing.is_email_verified or existing.is_deleted:
                raise ConflictError("email already registered", detail={"field": "email"})
            account = self.store.update_account(
                existing.id,
                first_name=first_name,
                last_name=last_name,
                role=role,
                phone_number=phone_number,
                company_id=company.id if company else None,
                supervisors_manager_id=supervisors_manager_id,
                flow_state=FlowState.UNVERIFIED,
            )
            self.otp.revoke(existing.email, OtpPurpose.RESET_PASSWORD)
        else:
            try:
                account = self.store.create_account(
                    email,
                    first_name,
                    last_name,
                    role=role,
                    phone_number=phone_number,
                    company_id=company.id if company else None,
                    supervisors_manager_id=supervisors_manager_id,
                )
            except ConstraintViolation as exc:
                raise ConflictError("email already registered", detail=exc.detail)
        self.store.save_password(account.id, password_hash, self.passwords.algo)
        if company is not None:
            self.tenancy.link_account(account.id, company.id, role)

        token = self.tokens.issue_single_use(account, TokenPurpose.VERIFY_EMAIL)
        issue = self.otp.issue(account.email, OtpPurpose.VERIFY_EMAIL)
        await self._notify(self.notifier.send_verification_email, account.email, issue.code)
        logger.info(
            "account_registered",
            account_id=account.id,
            role=role.value,
            reregistered=existing is not None,
        )
        return Registration(
            account=account,
            verification_token=token,
            otp_expires_at=issue.expires_at,
            otp=self._visible(issue.code),
        )

    # -- login ------------------------------------------------------------

    async def login(
        self, email: str, password: str, *, device_token: Optional[str] = None
    ) -> LoginResult:
        account = self.store.get_account_by_email(email)
        if account is None:
            self.passwords.verify_dummy(password)
            logger.warning("login_failed", reason="unknown_account")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if not account.is_email_verified:
            raise BadRequestError(
                "email address is not verified", detail={"next_step": "verify_email"}
            )
        if account.is_deleted:
            raise BadRequestError("account is deactivated")

        now = self._clock()
        locked = self.lockout.check(account.lock_until, now)
        if locked is not None:
            logger.warning("login_rejected_locked", account_id=account.id)
            raise self._locked_error(locked.remaining)

        record = self.store.get_password_record(account.id)
        if record is None or not self.passwords.verify(password, record.password_hash):
            outcome = self.store.record_login_failure(account.id, self.lockout, now)
            if outcome is None:
                raise AuthenticationError(_INVALID_CREDENTIALS)
            decision, updated = outcome
            if isinstance(decision, Locked):
                raise self._locked_error(decision.remaining)
            if isinstance(decision, ShouldLock):
                logger.warning(
                    "account_locked",
                    account_id=account.id,
                    attempts=updated.failed_login_attempts,
                    lock_until=updated.lock_until.isoformat() if updated.lock_until else None,
                )
                raise self._locked_error(decision.duration)
            logger.warning(
                "login_failed",
                reason="bad_password",
                account_id=account.id,
                attempts=updated.failed_login_attempts,
            )
            raise AuthenticationError(_INVALID_CREDENTIALS)

        self.store.reset_login_failures(account.id)
        if self.passwords.needs_rehash(record.password_hash):
            self.store.save_password(
                account.id, self.passwords.hash(password), self.passwords.algo
            )
        if device_token:
            self.store.update_account(account.id, device_token=device_token)
        account = self.store.get_account(account.id)
        tokens = self.tokens.issue_access_and_refresh(account)
        logger.info("login_succeeded", account_id=account.id)
        return LoginResult(
            account=account,
            tokens=tokens,
            is_setup_complete=self.tenancy.has_membership(account.id),
        )

    # -- one-time code flows ----------------------------------------------

    async def verify_email(self, email: str, token: str, otp: str) -> VerificationResult:
        account = self._live_account_by_email(email)
        purpose = account.expected_otp_purpose
        payload = self.tokens.verify(token, TokenPurpose(purpose.value))
        if payload["sub"] != account.id:
            raise InvalidTokenError("token does not belong to this account")

        if purpose == OtpPurpose.RESET_PASSWORD:
            # Reset flow: confirm now, consume in reset_password
            self.otp.confirm(account.email, otp, purpose)
        else:
            self.otp.verify(account.email, otp, purpose)

        fields: dict = {}
        if not account.is_email_verified:
            fields["email_verified_at"] = self._clock()
        if purpose == OtpPurpose.VERIFY_EMAIL:
            fields["flow_state"] = FlowState.ACTIVE
        if fields:
            account = self.store.update_account(account.id, **fields)
        logger.info("email_verified", account_id=account.id, purpose=purpose.value)
        return VerificationResult(
            account=account, tokens=self.tokens.issue_access_and_refresh(account)
        )

    async def resend_otp(self, email: str) -> OtpDispatch:
        account = self._live_account_by_email(email)
        dispatch = await self._dispatch_code(account, account.expected_otp_purpose)
        logger.info("otp_resent", account_id=account.id, purpose=dispatch.purpose.value)
        return dispatch

    async def forgot_password(self, email: str) -> OtpDispatch:
        account = self._live_account_by_email(email)
        self.otp.revoke(account.email, OtpPurpose.VERIFY_EMAIL)
        account = self.store.update_account(account.id, flow_state=FlowState.PENDING_RESET)
        dispatch = await self._dispatch_code(account, OtpPurpose.RESET_PASSWORD)
        logger.info("password_reset_requested", account_id=account.id)
        return dispatch

    async def reset_password(self, email: str, new_password: str, otp: str) -> Account:
        account = self._live_account_by_email(email)
        if account.flow_state != FlowState.PENDING_RESET:
            raise BadRequestError("no password reset is pending for this account")
        # Cheap check first so bad codes never pay for a hash
        if not self.otp.check_only(account.email, otp, OtpPurpose.RESET_PASSWORD):
            raise NotFoundError("invalid or expired code")
        new_hash = self.passwords.hash(new_password)
        self.otp.verify(account.email, otp, OtpPurpose.RESET_PASSWORD)
        self.store.save_password(account.id, new_hash, self.passwords.algo)
        account = self.store.update_account(
            account.id,
            flow_state=FlowState.ACTIVE,
            is_password_temporary=False,
            email_verified_at=account.email_verified_at or self._clock(),
        )
        logger.info("password_reset_completed", account_id=account.id)
        return account

    # -- authenticated password changes -----------------------------------

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> None:
        account = self._live_account(account_id)
        record = self.store.get_password_record(account.id)
        if record is None or not self.passwords.verify(current_password, record.password_hash):
            logger.warning("password_change_rejected", account_id=account.id)
            raise AuthenticationError("password is incorrect")
        self.store.save_password(
            account.id, self.passwords.hash(new_password), self.passwords.algo
        )
        logger.info("password_changed", account_id=account.id)

    async def set_initial_password(self, account_id: str, new_password: str) -> Account:
        account = self._live_account(account_id)
        if not account.is_password_temporary:
            raise BadRequestError("password has already been set")
        self.store.save_password(
            account.id, self.passwords.hash(new_password), self.passwords.algo
        )
        account = self.store.update_account(account.id, is_password_temporary=False)
        logger.info("initial_password_set", account_id=account.id)
        return account

    # -- sessions ---------------------------------------------------------

    async def refresh(self, refresh_token: str) -> TokenPair:
        payload = self.tokens.verify(refresh_token, TokenPurpose.REFRESH)
        account = self.store.get_account(payload["sub"])
        if account is None or account.is_deleted or not account.is_email_verified:
            raise InvalidTokenError("invalid token")
        return await self.tokens.rotate_from_refresh(refresh_token, account)

    async def logout(
        self, refresh_token: Optional[str] = None, access_token: Optional[str] = None
    ) -> int:
        """Denylist the given tokens; returns how many were revoked."""
        revoked = 0
        for token, purpose in (
            (refresh_token, TokenPurpose.REFRESH),
            (access_token, TokenPurpose.ACCESS),
        ):
            if not token:
                continue
            try:
                payload = self.tokens.verify(token, purpose)
            except TokenExpiredError:
                continue
            await self.tokens.revoke(payload)
            revoked += 1
        logger.info("logout", revoked=revoked)
        return revoked

    # -- provisioning -----------------------------------------------------

    async def invite_supervisor(
        self,
        manager_id: str,
        *,
        email: str,
        first_name: str,
        last_name: str,
        phone_number: Optional[str] = None,
    ) -> ProvisionedAccount:
        manager = self._live_account(manager_id)
        if manager.role != Role.PROJECT_MANAGER:
            raise ForbiddenError("only project managers can invite supervisors")
        company_id = self.tenancy.primary_company_id(manager.id) or manager.company_id
        if not company_id:
            raise BadRequestError("create a company before inviting supervisors")

        temp_password = self.passwords.generate_temporary_password()
        password_hash = self.passwords.hash(temp_password)
        try:
            account = self.store.create_account(
                email,
                first_name,
                last_name,
                role=Role.PROJECT_SUPERVISOR,
                phone_number=phone_number,
                company_id=company_id,
                supervisors_manager_id=manager.id,
                flow_state=FlowState.ACTIVE,
                email_verified_at=self._clock(),
                is_password_temporary=True,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)
        self.store.save_password(account.id, password_hash, self.passwords.algo)
        self.tenancy.link_account(account.id, company_id, Role.PROJECT_SUPERVISOR)
        await self._notify(
            self.notifier.send_supervisor_invite_email,
            account.email,
            manager.display_name,
            temp_password,
        )
        logger.info("supervisor_invited", account_id=account.id, manager_id=manager.id)
        return ProvisionedAccount(account=account, temporary_password=self._visible(temp_password))

    async def provision_admin(
        self, *, email: str, first_name: str, last_name: str, role: Role = Role.ADMIN
    ) -> ProvisionedAccount:
        role = Role(role)
        if role not in (Role.ADMIN, Role.SUPER_ADMIN):
            raise BadRequestError("only admin roles can be provisioned here", detail={"role": role.value})
        temp_password = self.passwords.generate_temporary_password()
        password_hash = self.passwords.hash(temp_password)
        try:
            account = self.store.create_account(
                email,
                first_name,
                last_name,
                role=role,
                flow_state=FlowState.ACTIVE,
                email_verified_at=self._clock(),
                is_password_temporary=True,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)
        self.store.save_password(account.id, password_hash, self.passwords.algo)
        await self._notify(self.notifier.send_welcome_email, account.email, temp_password)
        logger.info("admin_provisioned", account_id=account.id, role=role.value)
        return ProvisionedAccount(account=account, temporary_password=self._visible(temp_password))

    async def bootstrap_super_admin(
        self,
        email: str,
        password: str,
        *,
        first_name: str = "Super",
        last_name: str = "Admin",
    ) -> Account:
        """Create or promote the first super admin with a known password."""
        now = self._clock()
        existing = self.store.get_account_by_email(email)
        if existing is not None and existing.is_deleted:
            raise BadRequestError("account is deactivated")
        if existing is None:
            account = self.store.create_account(
                email,
                first_name,
                last_name,
                role=Role.SUPER_ADMIN,
                flow_state=FlowState.ACTIVE,
                email_verified_at=now,
            )
        else:
            account = self.store.update_account(
                existing.id,
                role=Role.SUPER_ADMIN,
                flow_state=FlowState.ACTIVE,
                email_verified_at=existing.email_verified_at or now,
                is_password_temporary=False,
            )
        self.store.save_password(account.id, self.passwords.hash(password), self.passwords.algo)
        logger.info("super_admin_bootstrapped", account_id=account.id, created=existing is None)
        return account
