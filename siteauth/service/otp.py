from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from siteauth.logging import get_logger
from siteauth.service.errors import NotFoundError
from siteauth.storage.models import OtpPurpose, OtpRecord, utcnow

logger = get_logger(__name__)

_INVALID_OTP = "invalid or expired code"


@dataclass(frozen=True)
class OtpIssue:
    code: str
    expires_at: datetime


class OtpIssuer:
    """Numeric one-time codes keyed by ``(email, purpose)``.

    Codes are stored as an HMAC of purpose, email and code under the server
    secret, so a leaked table cannot be replayed and a code issued for one
    purpose never matches the other. Issuing replaces the previous code for
    the same purpose.
    """

    def __init__(
        self,
        store,
        secret: str,
        *,
        length: int = 6,
        ttl_minutes: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._key = hmac.new(secret.encode(), b"otp", hashlib.sha256).digest()
        self.length = length
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def _hash(self, email: str, code: str, purpose: OtpPurpose) -> str:
        message = f"{OtpPurpose(purpose).value}:{email.strip().lower()}:{code.strip()}"
        return hmac.new(self._key, message.encode(), hashlib.sha256).hexdigest()

    def _generate(self) -> str:
        return f"{secrets.randbelow(10 ** self.length):0{self.length}d}"

    def issue(self, email: str, purpose: OtpPurpose) -> OtpIssue:
        now = self._clock()
        code = self._generate()
        expires_at = now + self.ttl
        self.store.put_otp(
            OtpRecord(
                email=email,
                purpose=OtpPurpose(purpose),
                code_hash=self._hash(email, code, purpose),
                expires_at=expires_at,
                created_at=now,
            )
        )
        logger.info("otp_issued", purpose=OtpPurpose(purpose).value, expires_at=expires_at.isoformat())
        return OtpIssue(code=code, expires_at=expires_at)

    def verify(self, email: str, code: str, purpose: OtpPurpose) -> bool:
        """Consume a code; a second call with the same code fails."""
        consumed = self.store.consume_otp(
            email, purpose, self._hash(email, code, purpose), self._clock()
        )
        if not consumed:
            logger.warning("otp_rejected", purpose=OtpPurpose(purpose).value, stage="verify")
            raise NotFoundError(_INVALID_OTP)
        return True

    def confirm(self, email: str, code: str, purpose: OtpPurpose) -> bool:
        """Mark a code confirmed without consuming it, at most once."""
        confirmed = self.store.confirm_otp(
            email, purpose, self._hash(email, code, purpose), self._clock()
        )
        if not confirmed:
            logger.warning("otp_rejected", purpose=OtpPurpose(purpose).value, stage="confirm")
            raise NotFoundError(_INVALID_OTP)
        return True

    def check_only(self, email: str, code: str, purpose: OtpPurpose) -> bool:
        """Non-mutating pre-check; :meth:`verify` remains the authoritative step."""
        record = self.store.get_otp(email, purpose)
        if record is None or not record.is_live(self._clock()):
            return False
        return hmac.compare_digest(record.code_hash, self._hash(email, code, purpose))

    def revoke(self, email: str, purpose: OtpPurpose) -> None:
        self.store.delete_otp(email, purpose)
