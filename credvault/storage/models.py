from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"


class OneTimePurpose(str, Enum):
    """What a one-time token authorizes once consumed."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class RefreshTokenRecord:
    token: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    role: str = Role.USER.value
    name: Optional[str] = None
    is_email_verified: bool = False
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    refresh_tokens: List[RefreshTokenRecord] = field(default_factory=list)
    email_verification_token_hash: Optional[str] = None
    email_verification_expiry: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expiry: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def has_refresh_token(self, token: str) -> bool:
        return any(record.token == token for record in self.refresh_tokens)

    def one_time_fields(self, purpose: OneTimePurpose) -> tuple[str, str]:
        """Attribute names holding the digest and expiry for ``purpose``."""
        if purpose == OneTimePurpose.EMAIL_VERIFICATION:
            return "email_verification_token_hash", "email_verification_expiry"
        return "password_reset_token_hash", "password_reset_expiry"
