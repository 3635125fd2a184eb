from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from siteauth.logging import get_logger
from siteauth.service.errors import (
    InvalidTokenError,
    TokenExpiredError,
    WrongPurposeError,
)
from siteauth.storage.models import Account, Role, utcnow
from siteauth.storage.redis_cache import CacheBackend

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    VERIFY_EMAIL = "verify_email"
    RESET_PASSWORD = "reset_password"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class RevocationList:
    """jti denylist shared by refresh rotation and logout.

    Entries live in Redis when a cache is configured, otherwise in a
    lock-guarded dict that drops entries once the token would have expired.
    """

    def __init__(self, cache: CacheBackend = None, *, clock: Callable[[], datetime] = utcnow):
        self.cache = cache
        self._clock = clock
        self._lock = threading.Lock()
        self._local: Dict[str, datetime] = {}

    def _key(self, purpose: TokenPurpose, jti: str) -> str:
        return f"{purpose.value}:{jti}"

    def _prune(self, now: datetime) -> None:
        expired = [key for key, until in self._local.items() if until <= now]
        for key in expired:
            self._local.pop(key, None)

    async def claim(self, purpose: TokenPurpose, jti: str, expires_at: datetime) -> bool:
        """Atomically move a jti onto the list; False if it was already there."""
        ttl = max(1, int((expires_at - self._clock()).total_seconds()))
        if self.cache is not None and purpose == TokenPurpose.REFRESH:
            return await self.cache.claim_refresh_token(jti, ttl)
        with self._lock:
            now = self._clock()
            self._prune(now)
            key = self._key(purpose, jti)
            if key in self._local:
                return False
            self._local[key] = expires_at
            return True

    async def revoke(self, purpose: TokenPurpose, jti: str, expires_at: datetime) -> None:
        ttl = int((expires_at - self._clock()).total_seconds())
        if ttl <= 0:
            return
        if self.cache is not None:
            try:
                if purpose == TokenPurpose.REFRESH:
                    await self.cache.mark_refresh_revoked(jti, ttl)
                else:
                    await self.cache.denylist_access_token(jti, ttl)
                return
            except Exception as exc:
                logger.warning("token_denylist_cache_failed", jti=jti, error=str(exc))
        with self._lock:
            self._local[self._key(purpose, jti)] = expires_at

    async def is_revoked(self, purpose: TokenPurpose, jti: str) -> bool:
        with self._lock:
            until = self._local.get(self._key(purpose, jti))
            if until is not None and until > self._clock():
                return True
        if self.cache is None:
            return False
        try:
            if purpose == TokenPurpose.REFRESH:
                return await self.cache.is_refresh_revoked(jti)
            return await self.cache.is_access_token_denylisted(jti)
        except Exception as exc:
            # Refresh tokens fail closed during a cache outage
            logger.warning("token_denylist_check_failed", jti=jti, error=str(exc))
            return purpose == TokenPurpose.REFRESH


class TokenIssuer:
    """HS256 tokens with one signing key per purpose.

    Each purpose signs with ``HMAC(master, purpose)`` and stamps the purpose in
    both the ``kid`` header and the ``token_type`` claim, so a reset token can
    never pass as an access token even if the claims were edited.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttls: Dict[TokenPurpose, timedelta],
        revocations: Optional[RevocationList] = None,
        clock: Callable[[], datetime] = utcnow,
        leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        missing = [p.value for p in TokenPurpose if p not in ttls]
        if missing:
            raise ValueError(f"missing token TTLs: {missing}")
        self.issuer = issuer
        self.audience = audience
        self.ttls = dict(ttls)
        self._keys = {
            purpose: hmac.new(secret.encode(), purpose.value.encode(), hashlib.sha256).digest()
            for purpose in TokenPurpose
        }
        self.revocations = revocations or RevocationList(clock=clock)
        self._clock = clock
        self._leeway = leeway

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        revocations: Optional[RevocationList] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttls={
                TokenPurpose.ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
                TokenPurpose.REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
                TokenPurpose.VERIFY_EMAIL: timedelta(
                    minutes=settings.verify_email_token_ttl_minutes
                ),
                TokenPurpose.RESET_PASSWORD: timedelta(
                    minutes=settings.reset_password_token_ttl_minutes
                ),
            },
            revocations=revocations,
            clock=clock,
            leeway=timedelta(seconds=settings.token_clock_skew_seconds),
        )

    # -- encoding ---------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, purpose: TokenPurpose, signing_input: str) -> str:
        digest = hmac.new(self._keys[purpose], signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode(self, purpose: TokenPurpose, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT", "kid": purpose.value}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(purpose, signing_input)}"

    def _mint(self, account: Account, purpose: TokenPurpose) -> tuple[str, datetime]:
        now = self._clock()
        expires_at = now + self.ttls[purpose]
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": account.id,
            "role": account.role.value,
            "token_type": purpose.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode(purpose, payload), datetime.fromtimestamp(payload["exp"], timezone.utc)

    # -- public API -------------------------------------------------------

    def issue_access_and_refresh(self, account: Account) -> TokenPair:
        access, access_exp = self._mint(account, TokenPurpose.ACCESS)
        refresh, refresh_exp = self._mint(account, TokenPurpose.REFRESH)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def issue_single_use(self, account: Account, purpose: TokenPurpose) -> str:
        purpose = TokenPurpose(purpose)
        if purpose not in (TokenPurpose.VERIFY_EMAIL, TokenPurpose.RESET_PASSWORD):
            raise ValueError(f"{purpose.value} is not a single-use purpose")
        token, _ = self._mint(account, purpose)
        return token

    def verify(self, token: str, expected: TokenPurpose) -> dict[str, Any]:
        expected = TokenPurpose(expected)
        # Encoded tokens are pure base64url; anything else never verifies
        if not isinstance(token, str) or not token.isascii():
            raise InvalidTokenError("invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("invalid token")
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("invalid token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError("invalid token")
        if header.get("kid") != expected.value:
            raise WrongPurposeError("token was not issued for this operation")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(expected, signing_input), sig_b64):
            raise InvalidTokenError("invalid token")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("invalid token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("invalid token")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("invalid token")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise InvalidTokenError("invalid token")
        if payload.get("token_type") != expected.value:
            raise WrongPurposeError("token was not issued for this operation")
        if not payload.get("sub") or not payload.get("jti"):
            raise InvalidTokenError("invalid token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("invalid token")
        if exp_ts <= self._clock().timestamp() - self._leeway.total_seconds():
            raise TokenExpiredError("token expired")
        return payload

    @staticmethod
    def expires_at(payload: dict[str, Any]) -> datetime:
        return datetime.fromtimestamp(float(payload["exp"]), timezone.utc)

    async def rotate_from_refresh(
        self, refresh_token: str, account: Optional[Account] = None
    ) -> TokenPair:
        """Spend a refresh token and mint a new pair for the same subject.

        Only the first caller to claim the jti succeeds, so a refresh token that
        was already rotated (or logged out) is rejected.
        """
        payload = self.verify(refresh_token, TokenPurpose.REFRESH)
        if account is not None and account.id != payload["sub"]:
            raise InvalidTokenError("invalid token")
        claimed = await self.revocations.claim(
            TokenPurpose.REFRESH, payload["jti"], self.expires_at(payload)
        )
        if not claimed:
            logger.warning("refresh_token_reuse", jti=payload["jti"])
            raise InvalidTokenError("refresh token already used")
        if account is None:
            # No live account supplied: reuse the role carried by the token
            account = Account(
                id=payload["sub"], email="", first_name="", last_name="", role=Role(payload["role"])
            )
        return self.issue_access_and_refresh(account)

    async def revoke(self, payload: dict[str, Any]) -> None:
        purpose = TokenPurpose(payload["token_type"])
        await self.revocations.revoke(purpose, payload["jti"], self.expires_at(payload))

    async def is_revoked(self, payload: dict[str, Any]) -> bool:
        purpose = TokenPurpose(payload["token_type"])
        return await self.revocations.is_revoked(purpose, payload["jti"])
