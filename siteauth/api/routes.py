from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Response

from siteauth.api.schemas import (
    AccountResponse,
    ChangePasswordRequest,
    EmailRequest,
    Envelope,
    InviteSupervisorRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    OtpDispatchResponse,
    ProvisionAdminRequest,
    ProvisionedAccountResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SetInitialPasswordRequest,
    TokenPairResponse,
    VerifyEmailRequest,
    VerifyEmailResponse,
)
from siteauth.logging import get_logger
from siteauth.service.auth import OtpDispatch
from siteauth.service.gate import AuthContext, extract_bearer
from siteauth.service.runtime import check_rate_limit, get_runtime
from siteauth.service.tokens import TokenPair
from siteauth.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Raise 429 once ``key`` has used up ``limit`` requests in the window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)
    if not allowed:
        logger.warning("rate_limited", key=key.split(":", 1)[0])
        raise HTTPException(
            status_code=429,
            detail={
                "status": "error",
                "error": {
                    "code": "rate_limited",
                    "message": "rate limit exceeded",
                    "details": {"retry_after_seconds": max(1, reset_seconds)},
                },
            },
            headers={"Retry-After": str(max(1, reset_seconds))},
        )


def require_roles(*roles: Role):
    """Dependency factory that runs the authorization gate for ``roles``.

    With no roles any verified account is accepted.
    """

    async def _dependency(authorization: Optional[str] = Header(None)) -> AuthContext:
        runtime = get_runtime()
        return await runtime.gate.authorize(authorization, roles or None)

    return _dependency


get_principal = require_roles()


def _token_pair_response(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _dispatch_response(dispatch: OtpDispatch) -> OtpDispatchResponse:
    return OtpDispatchResponse(
        email=dispatch.email,
        purpose=dispatch.purpose.value,
        token=dispatch.token,
        otp=dispatch.otp,
        expires_at=dispatch.expires_at,
    )


def _apply_session_cookies(
    response: Response, tokens: TokenPair, *, refresh_ttl_minutes: int
) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=refresh_ttl_minutes * 60,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(REFRESH_COOKIE, path="/", secure=True, samesite="lax")


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a project manager or supervisor account.

    The account starts unverified; a verification code goes out by email and
    the returned ``verification_token`` must accompany it on verify-email.
    Re-registering an unverified email replaces the pending account.

    Raises:
        400: Unknown company or supervisor manager
        409: Email already registered and verified
        429: Rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    registration = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=Role(body.role),
        phone_number=body.phone_number,
        company_id=body.company_id,
        supervisors_manager_id=body.supervisors_manager_id,
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user=AccountResponse.from_account(registration.account),
            verification_token=registration.verification_token,
            otp=registration.otp,
            otp_expires_at=registration.otp_expires_at,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        400: Email not verified or account deactivated
        401: Invalid credentials
        423: Account temporarily locked after repeated failures
        429: Rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(
        body.email, body.password, device_token=body.device_token
    )
    _apply_session_cookies(
        response,
        result.tokens,
        refresh_ttl_minutes=runtime.settings.refresh_token_ttl_minutes,
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=AccountResponse.from_account(result.account),
            tokens=_token_pair_response(result.tokens),
            is_setup_complete=result.is_setup_complete,
        ),
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    """Check a one-time code against the account's current flow.

    Unverified accounts become active. Accounts with a pending reset have the
    code confirmed here and spent by reset-password.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:verify:{body.email}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.verify_email(body.email, body.token, body.otp)
    return Envelope(
        status="ok",
        data=VerifyEmailResponse(
            user=AccountResponse.from_account(result.account),
            tokens=_token_pair_response(result.tokens),
        ),
    )


@router.post("/auth/resend-otp", response_model=Envelope, tags=["auth"])
async def resend_otp(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:send:{body.email}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
    )
    dispatch = await runtime.auth.resend_otp(body.email)
    return Envelope(status="ok", data=_dispatch_response(dispatch))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:send:{body.email}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
    )
    dispatch = await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data=_dispatch_response(dispatch))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:verify:{body.email}",
        runtime.settings.otp_rate_limit_per_minute,
        60,
    )
    account = await runtime.auth.reset_password(body.email, body.password, body.otp)
    return Envelope(status="ok", data={"user": AccountResponse.from_account(account)})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    principal: AuthContext = Depends(get_principal),
):
    """Change the current account's password; the old one must match."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{principal.account_id}",
        limit=5,
        window_seconds=300,
    )
    await runtime.auth.change_password(
        principal.account_id, body.old_password, body.new_password
    )
    return Envelope(status="ok", data={"status": "changed"})


@router.post("/auth/set-initial-password", response_model=Envelope, tags=["auth"])
async def set_initial_password(
    body: SetInitialPasswordRequest,
    principal: AuthContext = Depends(get_principal),
):
    """Replace the temporary password of an invited or provisioned account."""
    runtime = get_runtime()
    account = await runtime.auth.set_initial_password(principal.account_id, body.password)
    return Envelope(status="ok", data={"user": AccountResponse.from_account(account)})


@router.post("/auth/refresh-auth", response_model=Envelope, tags=["auth"])
async def refresh_auth(
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Exchange a refresh token for a new pair; each refresh token works once."""
    runtime = get_runtime()
    refresh_token = (body.refresh_token if body else None) or refresh_cookie
    if not refresh_token:
        raise _http_error("unauthorized", "refresh token required", status_code=401)
    tokens = await runtime.auth.refresh(refresh_token)
    _apply_session_cookies(
        response,
        tokens,
        refresh_ttl_minutes=runtime.settings.refresh_token_ttl_minutes,
    )
    return Envelope(status="ok", data={"tokens": _token_pair_response(tokens)})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    refresh_token = (body.refresh_token if body else None) or refresh_cookie
    access_token = extract_bearer(authorization)
    await runtime.auth.logout(refresh_token=refresh_token, access_token=access_token)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"status": "logged_out"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_account(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.store.get_account(principal.account_id)
    if account is None:
        raise _http_error("not_found", "account not found", status_code=404)
    return Envelope(
        status="ok",
        data=MeResponse(
            user=AccountResponse.from_account(account),
            role=principal.role.value,
            company_id=principal.company_id,
        ),
    )


@router.post("/supervisors/invite", response_model=Envelope, status_code=201, tags=["accounts"])
async def invite_supervisor(
    body: InviteSupervisorRequest,
    principal: AuthContext = Depends(require_roles(Role.PROJECT_MANAGER)),
):
    """Create a supervisor under the calling project manager's company.

    The supervisor is pre-verified and receives a temporary password by email.
    """
    runtime = get_runtime()
    provisioned = await runtime.auth.invite_supervisor(
        principal.account_id,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        phone_number=body.phone_number,
    )
    return Envelope(
        status="ok",
        data=ProvisionedAccountResponse(
            user=AccountResponse.from_account(provisioned.account),
            temporary_password=provisioned.temporary_password,
        ),
    )


@router.post("/admin/accounts", response_model=Envelope, status_code=201, tags=["admin"])
async def provision_admin(
    body: ProvisionAdminRequest,
    principal: AuthContext = Depends(require_roles(Role.SUPER_ADMIN)),
):
    runtime = get_runtime()
    provisioned = await runtime.auth.provision_admin(
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        role=Role(body.role),
    )
    logger.info(
        "admin_account_created",
        actor_id=principal.account_id,
        account_id=provisioned.account.id,
    )
    return Envelope(
        status="ok",
        data=ProvisionedAccountResponse(
            user=AccountResponse.from_account(provisioned.account),
            temporary_password=provisioned.temporary_password,
        ),
    )
