from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from siteauth.logging import get_logger
from siteauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
)
from siteauth.service.tokens import TokenIssuer, TokenPurpose
from siteauth.storage.models import Role

logger = get_logger(__name__)


class GateState(str, Enum):
    NO_TOKEN = "no_token"
    TOKEN_PRESENT = "token_present"
    TOKEN_VERIFIED = "token_verified"
    ACCOUNT_LOADED = "account_loaded"
    ROLE_CHECKED = "role_checked"
    AUTHORIZED = "authorized"
    REJECTED = "rejected"


@dataclass
class AuthContext:
    account_id: str
    role: Role
    company_id: Optional[str]
    token_id: str
    expires_at: datetime
    access_token: str = ""


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class AuthorizationGate:
    """Per-request check that walks a bearer token up to an authorized account.

    ``no_token -> token_present -> token_verified -> account_loaded ->
    role_checked -> authorized``; any step may end in ``rejected``. Roles are
    re-read from the live account, never trusted from the token.
    """

    def __init__(self, store, tokens: TokenIssuer, tenancy=None) -> None:
        self.store = store
        self.tokens = tokens
        self.tenancy = tenancy

    def _reject(self, state: GateState, error: ServiceError, **context) -> ServiceError:
        logger.warning(
            "authorization_rejected",
            state=state.value,
            reason=error.message,
            **context,
        )
        return error

    async def authorize(
        self,
        authorization: Optional[str],
        allowed_roles: Optional[Iterable[Role]] = None,
    ) -> AuthContext:
        state = GateState.NO_TOKEN
        token = extract_bearer(authorization)
        if token is None:
            raise self._reject(state, AuthenticationError("missing bearer token"))

        state = GateState.TOKEN_PRESENT
        try:
            payload = self.tokens.verify(token, TokenPurpose.ACCESS)
        except InvalidTokenError as exc:
            raise self._reject(state, exc)
        if await self.tokens.is_revoked(payload):
            raise self._reject(state, InvalidTokenError("token has been revoked"))

        state = GateState.TOKEN_VERIFIED
        account = self.store.get_account(payload["sub"])
        if account is None or account.is_deleted:
            raise self._reject(state, NotFoundError("account not found"), account_id=payload["sub"])

        state = GateState.ACCOUNT_LOADED
        if not account.is_email_verified:
            raise self._reject(
                state, BadRequestError("email address is not verified"), account_id=account.id
            )

        roles = {Role(r) for r in allowed_roles} if allowed_roles else None
        if roles is not None and account.role not in roles:
            raise self._reject(
                state,
                ForbiddenError("insufficient permissions"),
                account_id=account.id,
                role=account.role.value,
            )

        state = GateState.ROLE_CHECKED
        company_id = account.company_id
        if company_id is None and self.tenancy is not None:
            company_id = self.tenancy.primary_company_id(account.id)

        state = GateState.AUTHORIZED
        return AuthContext(
            account_id=account.id,
            role=account.role,
            company_id=company_id,
            token_id=payload["jti"],
            expires_at=self.tokens.expires_at(payload),
            access_token=token,
        )
