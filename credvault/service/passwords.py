from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from credvault.logging import get_logger

logger = get_logger(__name__)

# Verified against when an email is unknown so both login failures cost the same.
_DUMMY_PLAINTEXT = "credvault-timing-equalizer"


class PasswordHasher:
    """argon2id hashing with a verify that never raises on bad input."""

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)
        self._dummy_hash = self._hasher.hash(_DUMMY_PLAINTEXT)

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

    def dummy_verify(self) -> None:
        self.verify("not-the-password", self._dummy_hash)
