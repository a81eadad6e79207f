from __future__ import annotations

from datetime import datetime, timedelta

from credvault.config import Settings
from credvault.logging import get_logger
from credvault.service.errors import AccountLockedError, NotFoundError
from credvault.storage.common import CredentialStore
from credvault.storage.models import User

logger = get_logger(__name__)


class LockoutGuard:
    """Failed-login counter with a fixed lock window.

    An account is Active until ``max_login_attempts`` consecutive failures,
    then Locked until ``lock_until``. The lock is cleared lazily: the first
    check after it lapses resets the counter to zero.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.threshold = settings.max_login_attempts
        self.duration = timedelta(minutes=settings.lockout_minutes)

    def check(self, user: User, now: datetime) -> User:
        if user.lock_until is None:
            return user
        if user.is_locked(now):
            raise AccountLockedError(
                "Account is temporarily locked due to too many failed login attempts",
                detail={"lock_until": user.lock_until.isoformat()},
            )
        refreshed = self.store.clear_expired_lock(user.id, now)
        if refreshed is None:
            raise NotFoundError("user not found")
        logger.info("account_lock_expired", user_id=user.id)
        return refreshed

    def register_failure(self, user: User, now: datetime) -> User:
        updated = self.store.register_failed_login(
            user.id, threshold=self.threshold, lock_until=now + self.duration
        )
        if updated is None:
            raise NotFoundError("user not found")
        if updated.is_locked(now):
            logger.warning(
                "account_locked",
                user_id=updated.id,
                attempts=updated.login_attempts,
                lock_until=updated.lock_until.isoformat(),
            )
        return updated

    def register_success(self, user: User, now: datetime) -> User:
        updated = self.store.record_successful_login(user.id, now)
        if updated is None:
            raise NotFoundError("user not found")
        return updated
