"""AuthService account management and the access guard."""

import pytest

from credvault.service.auth import AuthContext, AuthService
from credvault.service.errors import (
    DuplicateEmailError,
    EmailNotVerifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    NotFoundError,
    StoreUnavailableError,
    UnauthenticatedError,
    ValidationError,
)
from credvault.storage.errors import StoreUnavailable

STRONG_PASSWORD = "Correct-Horse-9"


class TestRegister:
    def test_register_hashes_password_and_defaults(self, registered_user):
        assert registered_user.email == "alice@example.com"
        assert registered_user.role == "user"
        assert registered_user.is_email_verified is False
        assert registered_user.password_hash.startswith("$argon2id$")

    def test_duplicate_email_conflicts(self, auth_service, registered_user):
        with pytest.raises(DuplicateEmailError) as excinfo:
            auth_service.register("ALICE@example.com", STRONG_PASSWORD)

        assert excinfo.value.status_code == 409

    def test_signup_can_be_disabled(self, memory_store, settings, notifier, clock):
        closed = AuthService(
            memory_store,
            settings.model_copy(update={"allow_signup": False}),
            notifier=notifier,
            now=clock,
        )

        with pytest.raises(ForbiddenError):
            closed.register("bob@example.com", STRONG_PASSWORD)

    def test_register_without_notifier_still_issues_token(self, memory_store, settings, clock):
        service = AuthService(memory_store, settings, now=clock)

        user = service.register("carol@example.com", STRONG_PASSWORD)

        assert memory_store.get_user(user.id).email_verification_token_hash is not None


class TestChangePassword:
    def test_change_password_revokes_refresh_tokens(self, auth_service, registered_user):
        _, pair = auth_service.login("alice@example.com", STRONG_PASSWORD)

        auth_service.change_password(registered_user.id, STRONG_PASSWORD, "Fresh-Passw0rd")

        with pytest.raises(InvalidRefreshTokenError):
            auth_service.refresh_tokens(pair.refresh_token)
        auth_service.login("alice@example.com", "Fresh-Passw0rd")

    def test_wrong_current_password_rejected(self, auth_service, registered_user):
        with pytest.raises(InvalidCredentialsError):
            auth_service.change_password(registered_user.id, "Not-The-Passw0rd", "Fresh-Passw0rd")

        auth_service.login("alice@example.com", STRONG_PASSWORD)


class TestProfile:
    def test_get_me_returns_current_state(self, auth_service, registered_user):
        assert auth_service.get_me(registered_user.id).email == "alice@example.com"

    def test_get_me_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            auth_service.get_me("missing")

    def test_update_profile_changes_name_only(self, auth_service, registered_user):
        _, pair = auth_service.login("alice@example.com", STRONG_PASSWORD)

        updated = auth_service.update_profile(registered_user.id, name="Alice Liddell")

        assert updated.name == "Alice Liddell"
        assert updated.password_hash == registered_user.password_hash
        assert updated.has_refresh_token(pair.refresh_token)

    def test_delete_account_requires_password(self, auth_service, registered_user, memory_store):
        with pytest.raises(InvalidCredentialsError):
            auth_service.delete_account(registered_user.id, "Not-The-Passw0rd")
        assert memory_store.get_user(registered_user.id) is not None

        auth_service.delete_account(registered_user.id, STRONG_PASSWORD)

        assert memory_store.get_user(registered_user.id) is None
        with pytest.raises(InvalidCredentialsError):
            auth_service.login("alice@example.com", STRONG_PASSWORD)


class TestRoles:
    def test_admin_can_change_role(self, auth_service, registered_user):
        admin = AuthContext(user_id="admin-1", role="admin", email_verified=True)

        updated = auth_service.set_user_role(admin, registered_user.id, "instructor")

        assert updated.role == "instructor"

    def test_non_admin_cannot_change_role(self, auth_service, registered_user):
        ctx = AuthContext(user_id=registered_user.id, role="user")

        with pytest.raises(ForbiddenError):
            auth_service.set_user_role(ctx, registered_user.id, "admin")

    def test_unknown_role_rejected(self, auth_service, registered_user):
        admin = AuthContext(user_id="admin-1", role="admin")

        with pytest.raises(ValidationError):
            auth_service.set_user_role(admin, registered_user.id, "superuser")

    def test_role_change_for_missing_user(self, auth_service):
        admin = AuthContext(user_id="admin-1", role="admin")

        with pytest.raises(NotFoundError):
            auth_service.set_user_role(admin, "missing", "instructor")


class TestAccessGuard:
    def test_authenticate_valid_bearer(self, auth_service, registered_user):
        _, pair = auth_service.login("alice@example.com", STRONG_PASSWORD)

        ctx = auth_service.authenticate(f"Bearer {pair.access_token}")

        assert ctx.user_id == registered_user.id
        assert ctx.role == "user"
        assert ctx.email_verified is False

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Basic abc", "Bearer not-a-jwt"])
    def test_authenticate_rejects_bad_headers(self, auth_service, header):
        with pytest.raises(UnauthenticatedError):
            auth_service.authenticate(header)

    def test_refresh_token_is_not_an_access_token(self, auth_service, registered_user):
        _, pair = auth_service.login("alice@example.com", STRONG_PASSWORD)

        with pytest.raises(UnauthenticatedError):
            auth_service.authenticate(f"Bearer {pair.refresh_token}")

    def test_expired_access_token_rejected(self, auth_service, registered_user, clock):
        _, pair = auth_service.login("alice@example.com", STRONG_PASSWORD)
        clock.advance(minutes=16)

        with pytest.raises(UnauthenticatedError):
            auth_service.authenticate(f"Bearer {pair.access_token}")

    def test_role_read_from_store_not_token(self, auth_service, registered_user):
        _, pair = auth_service.login("alice@example.com", STRONG_PASSWORD)
        admin = AuthContext(user_id="admin-1", role="admin")
        auth_service.set_user_role(admin, registered_user.id, "instructor")

        ctx = auth_service.authenticate(f"Bearer {pair.access_token}")

        assert ctx.role == "instructor"

    def test_non_ascii_signature_is_unauthenticated(self, auth_service, registered_user):
        _, pair = auth_service.login("alice@example.com", STRONG_PASSWORD)
        header, payload, _ = pair.refresh_token.split(".")
        access_header, access_payload, _ = pair.access_token.split(".")

        with pytest.raises(InvalidRefreshTokenError):
            auth_service.refresh_tokens(f"{header}.{payload}.sigé")
        with pytest.raises(UnauthenticatedError):
            auth_service.authenticate(f"Bearer {access_header}.{access_payload}.sigé")

    def test_require_role(self, auth_service):
        ctx = AuthContext(user_id="u", role="instructor")

        auth_service.require_role(ctx, ["instructor", "admin"])
        with pytest.raises(ForbiddenError) as excinfo:
            auth_service.require_role(ctx, ["admin"])
        assert excinfo.value.status_code == 403

    def test_require_verified_email(self, auth_service, registered_user, notifier):
        _, pair = auth_service.login("alice@example.com", STRONG_PASSWORD)
        ctx = auth_service.authenticate(f"Bearer {pair.access_token}")
        with pytest.raises(EmailNotVerifiedError):
            auth_service.require_verified_email(ctx)

        auth_service.verify_email(notifier.last_verification_token())

        verified = auth_service.authenticate(f"Bearer {pair.access_token}")
        auth_service.require_verified_email(verified)


class TestStoreUnavailable:
    def test_store_timeout_surfaces_as_retryable_error(
        self, auth_service, registered_user, memory_store, monkeypatch
    ):
        def unavailable(*args, **kwargs):
            raise StoreUnavailable("get_user_by_email")

        monkeypatch.setattr(memory_store, "get_user_by_email", unavailable)

        with pytest.raises(StoreUnavailableError) as excinfo:
            auth_service.login("alice@example.com", STRONG_PASSWORD)

        assert excinfo.value.status_code == 503
        assert excinfo.value.retryable is True
        assert excinfo.value.detail == {"operation": "get_user_by_email"}
