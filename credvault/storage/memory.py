from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional

from credvault.logging import get_logger
from credvault.storage.common import cap_refresh_tokens, generate_uuid, normalize_email
from credvault.storage.errors import DuplicateEmail, StoreUnavailable
from credvault.storage.models import (
    OneTimePurpose,
    RefreshTokenRecord,
    User,
    utcnow,
)


class MemoryStore:
    """In-process credential store persisted to a JSON snapshot.

    Every read-modify-write happens under one re-entrant lock, so the counter
    and token-list primitives are atomic with respect to each other. Callers
    always receive copies, so mutating a returned ``User`` never changes
    stored state. A write whose snapshot cannot be saved is rolled back and
    reported as ``StoreUnavailable``.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/credvault",
        *,
        lock_timeout_seconds: Optional[float] = 5.0,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self._lock_timeout = lock_timeout_seconds
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    @contextmanager
    def _locked(self, operation: str, *, write: bool = False) -> Iterator[None]:
        """Hold the data lock; a failed write restores the state it started from."""
        timeout = -1 if self._lock_timeout is None else self._lock_timeout
        if not self._data_lock.acquire(timeout=timeout):
            self.logger.warning("memory_store_lock_timeout", operation=operation)
            raise StoreUnavailable(operation)
        try:
            if not write:
                yield
                return
            users, email_index = copy.deepcopy(self.users), dict(self._email_index)
            try:
                yield
            except OSError as exc:
                self.users, self._email_index = users, email_index
                self.logger.error(
                    "memory_store_persist_failed", operation=operation, error=str(exc)
                )
                raise StoreUnavailable(operation, "snapshot write failed") from exc
            except Exception:
                self.users, self._email_index = users, email_index
                raise
        finally:
            self._data_lock.release()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        name: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._locked("create_user", write=True):
            if normalized in self._email_index:
                raise DuplicateEmail(normalized)
            user = User(
                id=generate_uuid(),
                email=normalized,
                password_hash=password_hash,
                role=role,
                name=name,
            )
            self.users[user.id] = user
            self._email_index[normalized] = user.id
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._locked("get_user"):
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._locked("get_user_by_email"):
            user_id = self._email_index.get(normalize_email(email))
            user = self.users.get(user_id) if user_id else None
            return copy.deepcopy(user) if user else None

    def save_user(self, user: User) -> User:
        """Write the profile fields of ``user``; counters and tokens are left alone."""
        normalized = normalize_email(user.email)
        with self._locked("save_user", write=True):
            stored = self.users.get(user.id)
            if stored is None:
                raise KeyError(user.id)
            owner = self._email_index.get(normalized)
            if owner is not None and owner != user.id:
                raise DuplicateEmail(normalized)
            self._email_index.pop(stored.email, None)
            self._email_index[normalized] = user.id
            stored.email = normalized
            stored.name = user.name
            stored.role = user.role
            stored.is_email_verified = user.is_email_verified
            self._persist_state()
            return copy.deepcopy(stored)

    def delete_user(self, user_id: str) -> bool:
        with self._locked("delete_user", write=True):
            user = self.users.pop(user_id, None)
            if user is None:
                return False
            self._email_index.pop(normalize_email(user.email), None)
            self._persist_state()
            return True

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._locked("update_user_role", write=True):
            user = self.users.get(user_id)
            if user is None:
                return None
            user.role = role
            self._persist_state()
            return copy.deepcopy(user)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._locked("mark_email_verified", write=True):
            user = self.users.get(user_id)
            if user is None:
                return None
            user.is_email_verified = True
            user.email_verification_token_hash = None
            user.email_verification_expiry = None
            self._persist_state()
            return copy.deepcopy(user)

    # -- lockout -----------------------------------------------------------

    def clear_expired_lock(self, user_id: str, now: datetime) -> Optional[User]:
        with self._locked("clear_expired_lock", write=True):
            user = self.users.get(user_id)
            if user is None:
                return None
            if user.lock_until is not None and user.lock_until <= now:
                user.lock_until = None
                user.login_attempts = 0
                self._persist_state()
            return copy.deepcopy(user)

    def register_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[User]:
        with self._locked("register_failed_login", write=True):
            user = self.users.get(user_id)
            if user is None:
                return None
            if user.lock_until is None:
                user.login_attempts = min(user.login_attempts + 1, threshold)
                if user.login_attempts >= threshold:
                    user.lock_until = lock_until
            self._persist_state()
            return copy.deepcopy(user)

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]:
        with self._locked("record_successful_login", write=True):
            user = self.users.get(user_id)
            if user is None:
                return None
            user.login_attempts = 0
            user.lock_until = None
            user.last_login = now
            self._persist_state()
            return copy.deepcopy(user)

    # -- refresh tokens ------------------------------------------------------

    def add_refresh_token(
        self, user_id: str, record: RefreshTokenRecord, *, max_tokens: Optional[int] = None
    ) -> None:
        with self._locked("add_refresh_token", write=True):
            user = self.users.get(user_id)
            if user is None:
                raise KeyError(user_id)
            user.refresh_tokens = cap_refresh_tokens(
                user.refresh_tokens + [copy.deepcopy(record)], max_tokens
            )
            self._persist_state()

    def consume_refresh_token(self, user_id: str, token: str) -> bool:
        return self._drop_refresh_token(user_id, token, "consume_refresh_token")

    def remove_refresh_token(self, user_id: str, token: str) -> bool:
        return self._drop_refresh_token(user_id, token, "remove_refresh_token")

    def _drop_refresh_token(self, user_id: str, token: str, operation: str) -> bool:
        with self._locked(operation, write=True):
            user = self.users.get(user_id)
            if user is None or not user.has_refresh_token(token):
                return False
            user.refresh_tokens = [r for r in user.refresh_tokens if r.token != token]
            self._persist_state()
            return True

    def prune_expired_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._locked("prune_expired_refresh_tokens", write=True):
            user = self.users.get(user_id)
            if user is None:
                return 0
            live = [r for r in user.refresh_tokens if not r.is_expired(now)]
            removed = len(user.refresh_tokens) - len(live)
            if removed:
                user.refresh_tokens = live
                self._persist_state()
            return removed

    def set_password_hash(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._locked("set_password_hash", write=True):
            user = self.users.get(user_id)
            if user is None:
                return None
            user.password_hash = password_hash
            user.refresh_tokens = []
            self._persist_state()
            return copy.deepcopy(user)

    # -- one-time tokens -------------------------------------------------

    def set_one_time_token(
        self,
        user_id: str,
        purpose: OneTimePurpose,
        token_hash: str,
        expires_at: datetime,
    ) -> None:
        with self._locked("set_one_time_token", write=True):
            user = self.users.get(user_id)
            if user is None:
                raise KeyError(user_id)
            hash_attr, expiry_attr = user.one_time_fields(purpose)
            setattr(user, hash_attr, token_hash)
            setattr(user, expiry_attr, expires_at)
            self._persist_state()

    def clear_one_time_token(self, user_id: str, purpose: OneTimePurpose) -> None:
        with self._locked("clear_one_time_token", write=True):
            user = self.users.get(user_id)
            if user is None:
                return
            hash_attr, expiry_attr = user.one_time_fields(purpose)
            setattr(user, hash_attr, None)
            setattr(user, expiry_attr, None)
            self._persist_state()

    def consume_one_time_token(
        self, purpose: OneTimePurpose, token_hash: str, now: datetime
    ) -> Optional[User]:
        with self._locked("consume_one_time_token", write=True):
            for user in self.users.values():
                hash_attr, expiry_attr = user.one_time_fields(purpose)
                expiry = getattr(user, expiry_attr)
                if getattr(user, hash_attr) != token_hash:
                    continue
                if expiry is None or expiry <= now:
                    return None
                setattr(user, hash_attr, None)
                setattr(user, expiry_attr, None)
                self._persist_state()
                return copy.deepcopy(user)
            return None

    def ping(self) -> bool:
        with self._locked("ping"):
            return True

    # -- persistence -------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "role": user.role,
            "name": user.name,
            "is_email_verified": user.is_email_verified,
            "login_attempts": user.login_attempts,
            "lock_until": self._serialize_datetime(user.lock_until),
            "refresh_tokens": [
                {
                    "token": record.token,
                    "issued_at": self._serialize_datetime(record.issued_at),
                    "expires_at": self._serialize_datetime(record.expires_at),
                }
                for record in user.refresh_tokens
            ],
            "email_verification_token_hash": user.email_verification_token_hash,
            "email_verification_expiry": self._serialize_datetime(
                user.email_verification_expiry
            ),
            "password_reset_token_hash": user.password_reset_token_hash,
            "password_reset_expiry": self._serialize_datetime(user.password_reset_expiry),
            "last_login": self._serialize_datetime(user.last_login),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=data.get("role", "user"),
            name=data.get("name"),
            is_email_verified=data.get("is_email_verified", False),
            login_attempts=data.get("login_attempts", 0),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            refresh_tokens=[
                RefreshTokenRecord(
                    token=entry["token"],
                    issued_at=self._deserialize_datetime(entry["issued_at"]),
                    expires_at=self._deserialize_datetime(entry["expires_at"]),
                )
                for entry in data.get("refresh_tokens", [])
            ],
            email_verification_token_hash=data.get("email_verification_token_hash"),
            email_verification_expiry=self._deserialize_datetime(
                data.get("email_verification_expiry")
            ),
            password_reset_token_hash=data.get("password_reset_token_hash"),
            password_reset_expiry=self._deserialize_datetime(
                data.get("password_reset_expiry")
            ),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _persist_state(self) -> None:
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(state, indent=2))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self._email_index = {
            normalize_email(user.email): user.id for user in self.users.values()
        }
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True
