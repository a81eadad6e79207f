from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Callable

from credvault.config import Settings
from credvault.service.errors import InvalidOrExpiredTokenError
from credvault.storage.common import CredentialStore
from credvault.storage.models import OneTimePurpose, User


def hash_token(plaintext: str) -> str:
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


class OneTimeTokenManager:
    """Issues single-use tokens and stores only their SHA-256 digest."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        now: Callable[[], datetime],
    ) -> None:
        self.store = store
        self._now = now
        self._ttl = {
            OneTimePurpose.EMAIL_VERIFICATION: timedelta(
                hours=settings.email_verification_ttl_hours
            ),
            OneTimePurpose.PASSWORD_RESET: timedelta(
                minutes=settings.password_reset_ttl_minutes
            ),
        }

    def issue(self, user: User, purpose: OneTimePurpose) -> str:
        """Store a fresh digest for ``purpose`` and return the plaintext once.

        Issuing again replaces any earlier token of the same purpose.
        """
        plaintext = secrets.token_hex(32)
        expires_at = self._now() + self._ttl[purpose]
        self.store.set_one_time_token(user.id, purpose, hash_token(plaintext), expires_at)
        return plaintext

    def consume(self, plaintext: str, purpose: OneTimePurpose) -> User:
        if not plaintext:
            raise InvalidOrExpiredTokenError()
        user = self.store.consume_one_time_token(purpose, hash_token(plaintext), self._now())
        if user is None:
            raise InvalidOrExpiredTokenError()
        return user

    def revoke(self, user: User, purpose: OneTimePurpose) -> None:
        self.store.clear_one_time_token(user.id, purpose)
