from __future__ import annotations

import base64
import os

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from siteauth.logging import get_logger

logger = get_logger(__name__)

ALGO = "argon2id"


class PasswordHasher:
    """argon2id hashing with a fresh salt per call.

    ``verify`` never raises for a wrong password or a corrupt hash; callers
    only see ``False``. Plaintext never reaches the logs.
    """

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4):
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Burned on unknown emails so login latency does not reveal account existence
        self._dummy_hash = self._hasher.hash(base64.urlsafe_b64encode(os.urandom(12)).decode())

    @classmethod
    def from_settings(cls, settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    @property
    def algo(self) -> str:
        return ALGO

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def verify_dummy(self, plaintext: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, plaintext)
        except VerificationError:
            pass

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    @staticmethod
    def generate_temporary_password() -> str:
        return base64.urlsafe_b64encode(os.urandom(12)).decode().rstrip("=")
