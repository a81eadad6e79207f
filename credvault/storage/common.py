"""Storage contract and helpers shared between memory and postgres implementations."""

from __future__ import annotations

import unicodedata
import uuid
from datetime import datetime
from typing import List, Optional, Protocol

from credvault.storage.models import OneTimePurpose, RefreshTokenRecord, User


class CredentialStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        name: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_user(self, user: User) -> User: ...

    def delete_user(self, user_id: str) -> bool: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def clear_expired_lock(self, user_id: str, now: datetime) -> Optional[User]: ...

    def register_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[User]: ...

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]: ...

    def add_refresh_token(
        self, user_id: str, record: RefreshTokenRecord, *, max_tokens: Optional[int] = None
    ) -> None: ...

    def consume_refresh_token(self, user_id: str, token: str) -> bool: ...

    def remove_refresh_token(self, user_id: str, token: str) -> bool: ...

    def prune_expired_refresh_tokens(self, user_id: str, now: datetime) -> int: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def set_one_time_token(
        self,
        user_id: str,
        purpose: OneTimePurpose,
        token_hash: str,
        expires_at: datetime,
    ) -> None: ...

    def clear_one_time_token(self, user_id: str, purpose: OneTimePurpose) -> None: ...

    def consume_one_time_token(
        self, purpose: OneTimePurpose, token_hash: str, now: datetime
    ) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def ping(self) -> bool: ...


def normalize_email(email: str) -> str:
    """Canonical lookup form of an address: NFKC, stripped, lower-cased."""
    return unicodedata.normalize("NFKC", email).strip().lower()


def cap_refresh_tokens(
    records: List[RefreshTokenRecord], max_tokens: Optional[int]
) -> List[RefreshTokenRecord]:
    """Keep at most ``max_tokens`` records, dropping the oldest issued first."""
    if max_tokens is None or len(records) <= max_tokens:
        return records
    ordered = sorted(records, key=lambda r: r.issued_at)
    return ordered[len(ordered) - max_tokens:]


def generate_uuid() -> str:
    return str(uuid.uuid4())
