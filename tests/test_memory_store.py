import threading
from datetime import datetime, timedelta, timezone

import pytest

from credvault.storage.errors import DuplicateEmail, StoreUnavailable
from credvault.storage.memory import MemoryStore
from credvault.storage.models import OneTimePurpose, RefreshTokenRecord

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(token: str, *, offset_minutes: int = 0, ttl_days: int = 7) -> RefreshTokenRecord:
    issued = NOW + timedelta(minutes=offset_minutes)
    return RefreshTokenRecord(token=token, issued_at=issued, expires_at=issued + timedelta(days=ttl_days))


def test_memory_store_persists_credentials_across_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("Persist@Example.com", "hash-1", role="admin", name="Persist")
    store.add_refresh_token(user.id, _record("rt-1"))
    store.set_one_time_token(user.id, OneTimePurpose.PASSWORD_RESET, "digest", NOW + timedelta(minutes=10))
    store.register_failed_login(user.id, threshold=5, lock_until=NOW + timedelta(hours=2))

    reloaded = MemoryStore(fs_root=str(tmp_path))

    again = reloaded.get_user_by_email("persist@example.com")
    assert again is not None
    assert again.id == user.id
    assert again.role == "admin"
    assert again.login_attempts == 1
    assert [r.token for r in again.refresh_tokens] == ["rt-1"]
    assert again.refresh_tokens[0].expires_at == NOW + timedelta(days=7)
    assert again.password_reset_token_hash == "digest"


def test_email_is_normalized_and_unique(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("  Bob@Example.COM ", "hash")

    with pytest.raises(DuplicateEmail):
        store.create_user("bob@example.com", "other")

    assert store.get_user_by_email("BOB@example.com").email == "bob@example.com"


def test_returned_users_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("copy@example.com", "hash")

    user.login_attempts = 99
    user.refresh_tokens.append(_record("smuggled"))

    stored = store.get_user(user.id)
    assert stored.login_attempts == 0
    assert stored.refresh_tokens == []


def test_save_user_writes_profile_fields_only(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("profile@example.com", "hash", name="Before")
    store.add_refresh_token(user.id, _record("rt-1"))

    user.name = "After"
    user.password_hash = "tampered"
    user.login_attempts = 4
    user.refresh_tokens = []
    saved = store.save_user(user)

    assert saved.name == "After"
    assert saved.password_hash == "hash"
    assert saved.login_attempts == 0
    assert [r.token for r in saved.refresh_tokens] == ["rt-1"]


def test_save_user_rejects_email_taken_by_another_user(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("first@example.com", "hash")
    second = store.create_user("second@example.com", "hash")

    second.email = "first@example.com"
    with pytest.raises(DuplicateEmail):
        store.save_user(second)


def test_refresh_tokens_capped_oldest_first(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("cap@example.com", "hash")

    for i in range(5):
        store.add_refresh_token(user.id, _record(f"rt-{i}", offset_minutes=i), max_tokens=3)

    tokens = [r.token for r in store.get_user(user.id).refresh_tokens]
    assert tokens == ["rt-2", "rt-3", "rt-4"]


def test_consume_refresh_token_is_one_shot(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("once@example.com", "hash")
    store.add_refresh_token(user.id, _record("rt-1"))

    assert store.consume_refresh_token(user.id, "rt-1") is True
    assert store.consume_refresh_token(user.id, "rt-1") is False


def test_prune_drops_only_expired_tokens(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("prune@example.com", "hash")
    store.add_refresh_token(user.id, _record("old", ttl_days=1))
    store.add_refresh_token(user.id, _record("fresh", ttl_days=7))

    removed = store.prune_expired_refresh_tokens(user.id, NOW + timedelta(days=2))

    assert removed == 1
    assert [r.token for r in store.get_user(user.id).refresh_tokens] == ["fresh"]


def test_set_password_hash_clears_refresh_tokens(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("pw@example.com", "hash")
    store.add_refresh_token(user.id, _record("rt-1"))

    updated = store.set_password_hash(user.id, "new-hash")

    assert updated.password_hash == "new-hash"
    assert updated.refresh_tokens == []


def test_failed_login_counter_caps_at_threshold(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("lock@example.com", "hash")
    lock_until = NOW + timedelta(hours=2)

    for _ in range(7):
        updated = store.register_failed_login(user.id, threshold=5, lock_until=lock_until)

    assert updated.login_attempts == 5
    assert updated.lock_until == lock_until

    cleared = store.clear_expired_lock(user.id, lock_until + timedelta(seconds=1))
    assert cleared.login_attempts == 0
    assert cleared.lock_until is None


def test_consume_one_time_token_requires_unexpired_match(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("otp@example.com", "hash")
    expires = NOW + timedelta(hours=24)
    store.set_one_time_token(user.id, OneTimePurpose.EMAIL_VERIFICATION, "digest", expires)

    assert store.consume_one_time_token(OneTimePurpose.PASSWORD_RESET, "digest", NOW) is None
    assert store.consume_one_time_token(OneTimePurpose.EMAIL_VERIFICATION, "digest", expires) is None

    consumed = store.consume_one_time_token(OneTimePurpose.EMAIL_VERIFICATION, "digest", NOW)
    assert consumed.id == user.id
    assert consumed.email_verification_token_hash is None
    assert store.consume_one_time_token(OneTimePurpose.EMAIL_VERIFICATION, "digest", NOW) is None


def test_lock_timeout_raises_store_unavailable(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), lock_timeout_seconds=0.05)
    user = store.create_user("busy@example.com", "hash")
    held = threading.Event()
    release = threading.Event()

    def hold_lock():
        with store._locked("test_hold"):
            held.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=hold_lock)
    holder.start()
    held.wait(timeout=5)
    try:
        with pytest.raises(StoreUnavailable) as excinfo:
            store.get_user(user.id)
    finally:
        release.set()
        holder.join()

    assert excinfo.value.operation == "get_user"


def test_delete_user_removes_email_index(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("gone@example.com", "hash")

    assert store.delete_user(user.id) is True
    assert store.delete_user(user.id) is False
    assert store.get_user_by_email("gone@example.com") is None
    store.create_user("gone@example.com", "hash")


def test_failed_snapshot_write_leaves_state_unchanged(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice@example.com", "hash-1")
    store.add_refresh_token(user.id, _record("rt-1"))
    # a directory where the temp snapshot goes makes every write fail
    (tmp_path / "state" / "credential_store.json.tmp").mkdir()

    with pytest.raises(StoreUnavailable) as excinfo:
        store.consume_refresh_token(user.id, "rt-1")
    assert excinfo.value.operation == "consume_refresh_token"
    with pytest.raises(StoreUnavailable):
        store.set_password_hash(user.id, "hash-2")
    with pytest.raises(StoreUnavailable):
        store.create_user("bob@example.com", "hash")

    current = store.get_user(user.id)
    assert current.password_hash == "hash-1"
    assert [r.token for r in current.refresh_tokens] == ["rt-1"]
    assert store.get_user_by_email("bob@example.com") is None
    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert [r.token for r in reloaded.get_user(user.id).refresh_tokens] == ["rt-1"]
