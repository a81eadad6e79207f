from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import OperationalError, errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from credvault.logging import get_logger
from credvault.storage.common import normalize_email
from credvault.storage.errors import DuplicateEmail, StoreUnavailable
from credvault.storage.models import OneTimePurpose, RefreshTokenRecord, User

_ONE_TIME_COLUMNS = {
    OneTimePurpose.EMAIL_VERIFICATION: (
        "email_verification_token_hash",
        "email_verification_expiry",
    ),
    OneTimePurpose.PASSWORD_RESET: ("password_reset_token_hash", "password_reset_expiry"),
}

_REQUIRED_TABLES = ("app_user", "refresh_token")


def _is_user_id(value: str) -> bool:
    """Ids are UUIDs; anything else can never match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed credential store.

    Each atomic primitive is a single statement (``UPDATE ... RETURNING`` or
    ``DELETE ... RETURNING``) so row locks taken by Postgres serialize
    concurrent callers. Pool checkout and statement execution are both bounded
    by ``timeout_seconds``.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.warning("postgres_pool_timeout", operation=operation)
            raise StoreUnavailable(operation, "pool timeout") from exc
        except OperationalError as exc:
            self.logger.warning(
                "postgres_operational_error", operation=operation, error=str(exc)
            )
            raise StoreUnavailable(operation, exc.__class__.__name__) from exc

    def _verify_required_schema(self) -> None:
        """Ensure the credential tables exist before serving requests."""

        with self._connect("verify_schema") as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_credvault.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token=row["token"], issued_at=row["issued_at"], expires_at=row["expires_at"]
        )

    def _row_to_user(self, row: Dict[str, Any], tokens: List[Dict[str, Any]]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role") or "user",
            name=row.get("name"),
            is_email_verified=bool(row.get("is_email_verified")),
            login_attempts=row.get("login_attempts") or 0,
            lock_until=row.get("lock_until"),
            refresh_tokens=[self._row_to_record(t) for t in tokens],
            email_verification_token_hash=row.get("email_verification_token_hash"),
            email_verification_expiry=row.get("email_verification_expiry"),
            password_reset_token_hash=row.get("password_reset_token_hash"),
            password_reset_expiry=row.get("password_reset_expiry"),
            last_login=row.get("last_login"),
            created_at=row["created_at"],
        )

    def _hydrate(self, conn: Any, row: Optional[Dict[str, Any]]) -> Optional[User]:
        if not row:
            return None
        tokens = conn.execute(
            "SELECT token, issued_at, expires_at FROM refresh_token WHERE user_id = %s ORDER BY issued_at",
            (row["id"],),
        ).fetchall()
        return self._row_to_user(row, tokens)

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect("create_user") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, role, name)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, password_hash, role, name),
                ).fetchone()
        except errors.UniqueViolation:
            raise DuplicateEmail(normalized)
        return self._row_to_user(row, [])

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_user_id(user_id):
            return None
        with self._connect("get_user") as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
            return self._hydrate(conn, row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
            return self._hydrate(conn, row)

    def save_user(self, user: User) -> User:
        normalized = normalize_email(user.email)
        try:
            with self._connect("save_user") as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET email = %s, name = %s, role = %s, is_email_verified = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (normalized, user.name, user.role, user.is_email_verified, user.id),
                ).fetchone()
                saved = self._hydrate(conn, row)
        except errors.UniqueViolation:
            raise DuplicateEmail(normalized)
        if saved is None:
            raise KeyError(user.id)
        return saved

    def delete_user(self, user_id: str) -> bool:
        if not _is_user_id(user_id):
            return False
        with self._connect("delete_user") as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        if not _is_user_id(user_id):
            return None
        with self._connect("update_user_role") as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *", (role, user_id)
            ).fetchone()
            return self._hydrate(conn, row)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect("mark_email_verified") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET is_email_verified = TRUE,
                    email_verification_token_hash = NULL,
                    email_verification_expiry = NULL
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
            return self._hydrate(conn, row)

    # -- lockout -----------------------------------------------------------

    def clear_expired_lock(self, user_id: str, now: datetime) -> Optional[User]:
        with self._connect("clear_expired_lock") as conn:
            conn.execute(
                """
                UPDATE app_user SET lock_until = NULL, login_attempts = 0
                WHERE id = %s AND lock_until IS NOT NULL AND lock_until <= %s
                """,
                (user_id, now),
            )
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
            return self._hydrate(conn, row)

    def register_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[User]:
        with self._connect("register_failed_login") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = LEAST(login_attempts + 1, %(threshold)s),
                    lock_until = CASE
                        WHEN login_attempts + 1 >= %(threshold)s THEN %(lock_until)s
                        ELSE lock_until
                    END
                WHERE id = %(user_id)s AND lock_until IS NULL
                RETURNING *
                """,
                {"threshold": threshold, "lock_until": lock_until, "user_id": user_id},
            ).fetchone()
            if row is None:
                # already locked by a concurrent failure
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
            return self._hydrate(conn, row)

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]:
        with self._connect("record_successful_login") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = 0, lock_until = NULL, last_login = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, user_id),
            ).fetchone()
            return self._hydrate(conn, row)

    # -- refresh tokens ------------------------------------------------------

    def add_refresh_token(
        self, user_id: str, record: RefreshTokenRecord, *, max_tokens: Optional[int] = None
    ) -> None:
        with self._connect("add_refresh_token") as conn:
            conn.execute(
                """
                INSERT INTO refresh_token (token, user_id, issued_at, expires_at)
                VALUES (%s, %s, %s, %s)
                """,
                (record.token, user_id, record.issued_at, record.expires_at),
            )
            if max_tokens is not None:
                conn.execute(
                    """
                    DELETE FROM refresh_token WHERE token IN (
                        SELECT token FROM refresh_token WHERE user_id = %s
                        ORDER BY issued_at DESC OFFSET %s
                    )
                    """,
                    (user_id, max_tokens),
                )

    def consume_refresh_token(self, user_id: str, token: str) -> bool:
        with self._connect("consume_refresh_token") as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s AND token = %s RETURNING token",
                (user_id, token),
            ).fetchone()
            return row is not None

    def remove_refresh_token(self, user_id: str, token: str) -> bool:
        with self._connect("remove_refresh_token") as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s AND token = %s",
                (user_id, token),
            )
            return result.rowcount > 0

    def prune_expired_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect("prune_expired_refresh_tokens") as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s AND expires_at <= %s",
                (user_id, now),
            )
            return result.rowcount

    def set_password_hash(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._connect("set_password_hash") as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s RETURNING *",
                (password_hash, user_id),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return self._row_to_user(row, [])

    # -- one-time tokens -------------------------------------------------

    def set_one_time_token(
        self,
        user_id: str,
        purpose: OneTimePurpose,
        token_hash: str,
        expires_at: datetime,
    ) -> None:
        hash_col, expiry_col = _ONE_TIME_COLUMNS[purpose]
        query = sql.SQL("UPDATE app_user SET {} = %s, {} = %s WHERE id = %s").format(
            sql.Identifier(hash_col), sql.Identifier(expiry_col)
        )
        with self._connect("set_one_time_token") as conn:
            result = conn.execute(query, (token_hash, expires_at, user_id))
            if result.rowcount == 0:
                raise KeyError(user_id)

    def clear_one_time_token(self, user_id: str, purpose: OneTimePurpose) -> None:
        hash_col, expiry_col = _ONE_TIME_COLUMNS[purpose]
        query = sql.SQL("UPDATE app_user SET {} = NULL, {} = NULL WHERE id = %s").format(
            sql.Identifier(hash_col), sql.Identifier(expiry_col)
        )
        with self._connect("clear_one_time_token") as conn:
            conn.execute(query, (user_id,))

    def consume_one_time_token(
        self, purpose: OneTimePurpose, token_hash: str, now: datetime
    ) -> Optional[User]:
        hash_col, expiry_col = _ONE_TIME_COLUMNS[purpose]
        query = sql.SQL(
            "UPDATE app_user SET {hash} = NULL, {expiry} = NULL "
            "WHERE {hash} = %s AND {expiry} > %s RETURNING *"
        ).format(hash=sql.Identifier(hash_col), expiry=sql.Identifier(expiry_col))
        with self._connect("consume_one_time_token") as conn:
            row = conn.execute(query, (token_hash, now)).fetchone()
            return self._hydrate(conn, row)

    def ping(self) -> bool:
        with self._connect("ping") as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
            return bool(row and row.get("ok") == 1)
