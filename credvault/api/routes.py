from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header

from credvault.api.schemas import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RoleUpdateRequest,
    TokenResponse,
    UpdateProfileRequest,
    UserResponse,
)
from credvault.service.auth import AuthContext
from credvault.service.runtime import get_runtime
from credvault.service.tokens import TokenPair
from credvault.storage.models import Role, User

router = APIRouter(prefix="/v1")


def _token_response(user: User, pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
        user=UserResponse.from_user(user),
    )


def _message(text: str) -> Envelope:
    return Envelope(status="ok", data=MessageResponse(message=text))


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await asyncio.to_thread(runtime.auth.authenticate, authorization)


async def get_verified_user(ctx: AuthContext = Depends(get_user)) -> AuthContext:
    get_runtime().auth.require_verified_email(ctx)
    return ctx


async def get_admin_user(ctx: AuthContext = Depends(get_user)) -> AuthContext:
    get_runtime().auth.require_role(ctx, [Role.ADMIN.value])
    return ctx


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a new account and send a verification email.

    Delivery of the verification email is best-effort; the account is created
    even when the mail server is unreachable.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    runtime = get_runtime()
    user = await asyncio.to_thread(
        runtime.auth.register, body.email, body.password, name=body.name
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: If the email is unknown or the password is wrong
        423: If the account is locked after repeated failures
    """
    runtime = get_runtime()
    user, pair = await asyncio.to_thread(runtime.auth.login, body.email, body.password)
    return Envelope(status="ok", data=_token_response(user, pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    """Rotate a refresh token. The presented token cannot be used again."""
    runtime = get_runtime()
    user, pair = await asyncio.to_thread(runtime.auth.refresh_tokens, body.refresh_token)
    return Envelope(status="ok", data=_token_response(user, pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.logout, principal.user_id, body.refresh_token)
    return _message("Logged out successfully")


@router.get("/auth/verify-email/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(token: str):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.verify_email, token)
    return _message("Email verified successfully")


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.resend_verification, principal.user_id)
    return _message("Verification email sent")


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Email a single-use reset link.

    Raises:
        404: If no account uses the email
        500: If the email could not be sent; the reset token is withdrawn
    """
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.forgot_password, body.email)
    return _message("Password reset email sent")


@router.put("/auth/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def reset_password(token: str, body: ResetPasswordRequest):
    """Set a new password with a reset token and sign out every device."""
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.reset_password, token, body.password)
    return _message("Password reset successful")


@router.put("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.auth.change_password,
        principal.user_id,
        body.current_password,
        body.new_password,
    )
    return _message("Password changed successfully")


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.auth.get_me, principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/auth/me", response_model=Envelope, tags=["auth"])
async def update_current_user(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_verified_user)
):
    runtime = get_runtime()
    user = await asyncio.to_thread(
        runtime.auth.update_profile, principal.user_id, name=body.name
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/auth/me", response_model=Envelope, tags=["auth"])
async def delete_current_user(
    body: DeleteAccountRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.delete_account, principal.user_id, body.password)
    return _message("Account deleted successfully")


@router.put("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def update_user_role(
    user_id: str, body: RoleUpdateRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await asyncio.to_thread(
        runtime.auth.set_user_role, principal, user_id, body.role.value
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))
