from __future__ import annotations

import functools
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Tuple

from credvault.config import Settings
from credvault.logging import get_logger, hash_email
from credvault.service.email import NotificationChannel
from credvault.service.errors import (
    DuplicateEmailError,
    EmailNotVerifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    NotFoundError,
    NotificationFailedError,
    StoreUnavailableError,
    UnauthenticatedError,
    ValidationError,
)
from credvault.service.lockout import LockoutGuard
from credvault.service.one_time import OneTimeTokenManager
from credvault.service.passwords import PasswordHasher
from credvault.service.tokens import TokenIssuer, TokenPair
from credvault.storage.common import CredentialStore
from credvault.storage.errors import DuplicateEmail, StoreUnavailable
from credvault.storage.models import OneTimePurpose, RefreshTokenRecord, Role, User

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    role: str
    email_verified: bool = False


def _store_errors(func):
    """Translate storage-layer failures into service errors."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DuplicateEmail as exc:
            raise DuplicateEmailError() from exc
        except StoreUnavailable as exc:
            logger.warning("store_unavailable", operation=exc.operation, reason=exc.reason)
            raise StoreUnavailableError(
                "Service temporarily unavailable, please retry",
                detail={"operation": exc.operation},
            ) from exc

    return wrapper


class AuthService:
    """Registration, login, token rotation and one-time token flows.

    The store is authoritative: nothing about a user is cached between
    calls, and every state change that must not be lost to a concurrent
    request goes through one of the store's atomic primitives.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        notifier: Optional[NotificationChannel] = None,
        hasher: Optional[PasswordHasher] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.hasher = hasher or PasswordHasher()
        self.tokens = TokenIssuer(settings, now=self._now)
        self.lockout = LockoutGuard(store, settings)
        self.one_time = OneTimeTokenManager(store, settings, now=self._now)
        self.logger = logger

    # -- registration & login ------------------------------------------------

    @_store_errors
    def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        role: str = Role.USER.value,
    ) -> User:
        if not self.settings.allow_signup:
            raise ForbiddenError("Signups are disabled")
        user = self.store.create_user(email, self.hasher.hash(password), role=role, name=name)
        self.logger.info("user_registered", user_id=user.id, email_hash=hash_email(user.email))
        self._deliver_verification(user)
        return user

    @_store_errors
    def login(self, email: str, password: str) -> Tuple[User, TokenPair]:
        user = self.store.get_user_by_email(email)
        if user is None:
            self.hasher.dummy_verify()
            self.logger.info("login_failed", reason="unknown_email", email_hash=hash_email(email))
            raise InvalidCredentialsError()

        now = self._now()
        user = self.lockout.check(user, now)
        if not self.hasher.verify(password, user.password_hash):
            updated = self.lockout.register_failure(user, now)
            self.logger.info(
                "login_failed",
                reason="bad_password",
                user_id=user.id,
                attempts=updated.login_attempts,
            )
            raise InvalidCredentialsError()

        user = self.lockout.register_success(user, now)
        pair = self._issue_pair(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, pair

    def _issue_pair(self, user: User) -> TokenPair:
        pair = self.tokens.issue(user)
        self.store.prune_expired_refresh_tokens(user.id, pair.issued_at)
        self.store.add_refresh_token(
            user.id,
            RefreshTokenRecord(
                token=pair.refresh_token,
                issued_at=pair.issued_at,
                expires_at=pair.refresh_expires_at,
            ),
            max_tokens=self.settings.max_refresh_tokens_per_user,
        )
        return pair

    # -- refresh rotation --------------------------------------------------

    @_store_errors
    def refresh_tokens(self, refresh_token: str) -> Tuple[User, TokenPair]:
        payload = self.tokens.decode_refresh(refresh_token)
        if not payload:
            self.logger.warning("refresh_token_rejected", reason="signature_or_expiry")
            raise InvalidRefreshTokenError()
        user = self.store.get_user(str(payload.get("sub")))
        if user is None:
            self.logger.warning("refresh_token_rejected", reason="user_missing")
            raise InvalidRefreshTokenError()
        # Membership check and removal are one atomic step; a replayed or
        # concurrently rotated token fails here.
        if not self.store.consume_refresh_token(user.id, refresh_token):
            self.logger.warning("refresh_token_rejected", reason="not_active", user_id=user.id)
            raise InvalidRefreshTokenError()
        pair = self._issue_pair(user)
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return user, pair

    @_store_errors
    def logout(self, user_id: str, refresh_token: Optional[str]) -> bool:
        removed = False
        if refresh_token:
            removed = self.store.remove_refresh_token(user_id, refresh_token)
        self.logger.info("user_logged_out", user_id=user_id, token_removed=removed)
        return removed

    # -- email verification ------------------------------------------------

    def _notify(self, send: Callable[[str, str], bool], user: User, token: str) -> bool:
        """Run one channel call; a raised error counts as a failed delivery."""
        try:
            return bool(send(user.email, token))
        except Exception as exc:
            self.logger.error(
                "notification_channel_error",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    def _deliver_verification(self, user: User) -> None:
        token = self.one_time.issue(user, OneTimePurpose.EMAIL_VERIFICATION)
        if self.notifier is None:
            self.logger.warning("verification_email_skipped", user_id=user.id)
            return
        # Delivery is best-effort; the token stays valid for a later resend.
        if not self._notify(self.notifier.send_email_verification, user, token):
            self.logger.warning("verification_email_failed", user_id=user.id)

    @_store_errors
    def verify_email(self, token: str) -> User:
        user = self.one_time.consume(token, OneTimePurpose.EMAIL_VERIFICATION)
        verified = self.store.mark_email_verified(user.id)
        if verified is None:
            raise NotFoundError("User not found")
        self.logger.info("email_verified", user_id=user.id)
        return verified

    @_store_errors
    def resend_verification(self, user_id: str) -> None:
        user = self._require_user(user_id)
        if user.is_email_verified:
            raise ValidationError("Email is already verified")
        self._deliver_verification(user)

    # -- password reset ----------------------------------------------------

    @_store_errors
    def forgot_password(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            raise NotFoundError("There is no user with that email")
        token = self.one_time.issue(user, OneTimePurpose.PASSWORD_RESET)
        delivered = self.notifier is not None and self._notify(
            self.notifier.send_password_reset, user, token
        )
        if not delivered:
            self.one_time.revoke(user, OneTimePurpose.PASSWORD_RESET)
            self.logger.error("password_reset_email_failed", user_id=user.id)
            raise NotificationFailedError()
        self.logger.info("password_reset_requested", user_id=user.id)

    @_store_errors
    def reset_password(self, token: str, new_password: str) -> User:
        # hash first so the only step between consume and store is the write
        password_hash = self.hasher.hash(new_password)
        user = self.one_time.consume(token, OneTimePurpose.PASSWORD_RESET)
        updated = self.store.set_password_hash(user.id, password_hash)
        if updated is None:
            raise NotFoundError("User not found")
        self.logger.info("password_reset_completed", user_id=user.id)
        return updated

    # -- account management ------------------------------------------------

    @_store_errors
    def change_password(self, user_id: str, current_password: str, new_password: str) -> User:
        user = self._require_user(user_id)
        if not self.hasher.verify(current_password, user.password_hash):
            self.logger.info("password_change_rejected", user_id=user_id)
            raise InvalidCredentialsError("Current password is incorrect")
        updated = self.store.set_password_hash(user_id, self.hasher.hash(new_password))
        if updated is None:
            raise NotFoundError("User not found")
        self.logger.info("password_changed", user_id=user_id)
        return updated

    @_store_errors
    def get_me(self, user_id: str) -> User:
        return self._require_user(user_id)

    @_store_errors
    def update_profile(self, user_id: str, *, name: Optional[str]) -> User:
        user = self._require_user(user_id)
        user.name = name
        return self.store.save_user(user)

    @_store_errors
    def delete_account(self, user_id: str, password: str) -> None:
        user = self._require_user(user_id)
        if not self.hasher.verify(password, user.password_hash):
            raise InvalidCredentialsError("Incorrect password")
        self.store.delete_user(user_id)
        self.logger.info("account_deleted", user_id=user_id)

    @_store_errors
    def set_user_role(self, ctx: AuthContext, user_id: str, role: str) -> User:
        self.require_role(ctx, [Role.ADMIN.value])
        if role not in {r.value for r in Role}:
            raise ValidationError("Unknown role", detail={"role": role})
        updated = self.store.update_user_role(user_id, role)
        if updated is None:
            raise NotFoundError("User not found")
        self.logger.info("user_role_changed", user_id=user_id, role=role, actor=ctx.user_id)
        return updated

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    # -- access guard ------------------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    @_store_errors
    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthenticatedError()
        payload = self.tokens.decode_access(token)
        if not payload:
            raise UnauthenticatedError()
        user = self.store.get_user(str(payload.get("sub")))
        if user is None:
            raise UnauthenticatedError("User no longer exists")
        return AuthContext(
            user_id=user.id, role=user.role, email_verified=user.is_email_verified
        )

    def require_role(self, ctx: AuthContext, allowed_roles: Iterable[str]) -> None:
        allowed = set(allowed_roles)
        if ctx.role not in allowed:
            raise ForbiddenError(
                f"User role {ctx.role} is not authorized to access this route",
                detail={"required": sorted(allowed)},
            )

    def require_verified_email(self, ctx: AuthContext) -> None:
        if not ctx.email_verified:
            raise EmailNotVerifiedError()
