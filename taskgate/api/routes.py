from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query

from taskgate.api.deps import (
    get_current_user,
    get_optional_user,
    get_runtime,
    rate_limit,
    require_admin,
    require_manager,
    require_permission,
    require_two_factor,
)
from taskgate.api.schemas import (
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    LogoutRequest,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TaskCreateRequest,
    TaskResponse,
    TokenResponse,
    TwoFactorRequest,
    UserAdminUpdateRequest,
    UserResponse,
    ok,
    validate_hex_token,
)
from taskgate.logging import get_logger
from taskgate.service import policies
from taskgate.service.errors import NotFoundError, ValidationError
from taskgate.service.gate import AuthContext
from taskgate.service.runtime import Runtime
from taskgate.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

_auth_rate_limit = {
    scope: rate_limit(scope, "auth_rate_limit_max_requests", "auth_rate_limit_window_seconds")
    for scope in ("register", "login", "resend_verification", "forgot_password")
}

FORGOT_PASSWORD_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent"
)


def _token_payload(pair: TokenPair) -> dict:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        token_type=pair.token_type,
    ).model_dump(by_alias=True)


async def _send_verification(runtime: Runtime, email: str, token: str) -> None:
    # SMTP is blocking; keep it off the event loop
    sent = await asyncio.to_thread(runtime.email.send_email_verification, email, token)
    if not sent:
        logger.warning("verification_email_not_sent")


@router.post("/auth/register", status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    runtime: Runtime = Depends(get_runtime),
    _limit=Depends(_auth_rate_limit["register"]),
):
    """Create an account and sign it in.

    A verification email goes out after the user is stored; delivery
    failures are logged and do not fail the registration.
    """
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
    )
    if result.verification_token:
        await _send_verification(runtime, result.user.email, result.verification_token)
    return ok(
        "User registered successfully. Please check your email to verify your account.",
        {"user": UserResponse.from_user(result.user).dump(), **_token_payload(result.tokens)},
    )


@router.post("/auth/login", tags=["auth"])
async def login(
    body: LoginRequest,
    runtime: Runtime = Depends(get_runtime),
    _limit=Depends(_auth_rate_limit["login"]),
):
    result = await runtime.auth.login(body.email, body.password, remember_me=body.remember_me)
    return ok(
        "Login successful",
        {"user": UserResponse.from_user(result.user).dump(), **_token_payload(result.tokens)},
    )


@router.post("/auth/refresh-token", tags=["auth"])
async def refresh_token(body: RefreshRequest, runtime: Runtime = Depends(get_runtime)):
    pair = await runtime.auth.refresh(body.refresh_token)
    return ok("Token refreshed successfully", _token_payload(pair))


@router.post("/auth/logout", tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: Optional[AuthContext] = Depends(get_optional_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout(principal, body.refresh_token if body else None)
    return ok("Logout successful")


@router.get("/auth/verify-email/{token}", tags=["auth"])
async def verify_email(token: str = Path(...), runtime: Runtime = Depends(get_runtime)):
    try:
        token = validate_hex_token(token)
    except ValueError as exc:
        raise ValidationError(str(exc), detail={"field": "token"}) from exc
    await runtime.auth.verify_email(token)
    return ok("Email verified successfully")


@router.post("/auth/resend-verification", tags=["auth"])
async def resend_verification(
    body: EmailRequest,
    runtime: Runtime = Depends(get_runtime),
    _limit=Depends(_auth_rate_limit["resend_verification"]),
):
    user, token = await runtime.auth.resend_verification(body.email)
    await _send_verification(runtime, user.email, token)
    return ok("Verification email sent")


@router.post("/auth/forgot-password", tags=["auth"])
async def forgot_password(
    body: EmailRequest,
    runtime: Runtime = Depends(get_runtime),
    _limit=Depends(_auth_rate_limit["forgot_password"]),
):
    token = await runtime.auth.forgot_password(body.email)
    if token:
        sent = await asyncio.to_thread(runtime.email.send_password_reset, body.email, token)
        if not sent:
            logger.warning("password_reset_email_not_sent")
    # Same response whether or not the account exists
    return ok(FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", tags=["auth"])
async def reset_password(body: ResetPasswordRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.reset_password(body.token, body.password)
    return ok("Password reset successful")


@router.post("/auth/change-password", tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the caller's password.

    Every access token issued before the change stops working and the
    stored refresh token is revoked, so the client has to log in again.
    """
    await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return ok("Password changed successfully. Please login again.")


@router.get("/auth/profile", tags=["auth"])
async def get_profile(
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.get_profile(principal.user_id)
    return ok(
        "Profile retrieved successfully",
        {
            "user": UserResponse.from_user(user).dump(),
            "permissions": list(policies.permissions_for(user.role)),
        },
    )


@router.put("/auth/profile", tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest,
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.update_profile(principal.user_id, body.to_updates())
    return ok("Profile updated successfully", {"user": UserResponse.from_user(user).dump()})


@router.post("/auth/enable-2fa", tags=["auth"])
async def enable_two_factor(
    body: TwoFactorRequest,
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.set_two_factor(principal.user_id, True)
    return ok(
        "Two-factor authentication enabled", {"user": UserResponse.from_user(user).dump()}
    )


@router.post("/auth/disable-2fa", tags=["auth"])
async def disable_two_factor(
    body: TwoFactorRequest,
    principal: AuthContext = Depends(require_two_factor),
    runtime: Runtime = Depends(get_runtime),
):
    """Takes the 6-digit ``twoFactorToken`` in the body, which also satisfies the 2FA gate."""
    user = await runtime.auth.set_two_factor(principal.user_id, False)
    return ok(
        "Two-factor authentication disabled", {"user": UserResponse.from_user(user).dump()}
    )


@router.get("/users", tags=["users"])
async def list_users(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(require_manager),
    runtime: Runtime = Depends(get_runtime),
):
    users = await runtime.auth.list_users(limit=limit, offset=offset)
    return ok(
        "Users retrieved successfully",
        {"users": [UserResponse.from_user(u).dump() for u in users], "limit": limit, "offset": offset},
    )


@router.get("/users/{user_id}", tags=["users"])
async def get_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    policies.require_owner_or_admin(principal, user_id)
    user = await runtime.auth.get_user(user_id)
    return ok("User retrieved successfully", {"user": UserResponse.from_user(user).dump()})


@router.patch("/users/{user_id}", tags=["users"])
async def update_user(
    body: UserAdminUpdateRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_admin),
    _two_factor: AuthContext = Depends(require_two_factor),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.get_user(user_id)
    if body.role is not None:
        user = await runtime.auth.set_role(user_id, body.role)
    if body.is_active is not None:
        user = await runtime.auth.set_active(user_id, body.is_active)
    logger.info("admin_user_updated", actor_id=principal.user_id, user_id=user_id)
    return ok("User updated successfully", {"user": UserResponse.from_user(user).dump()})


@router.delete("/users/{user_id}", tags=["users"])
async def deactivate_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_admin),
    _two_factor: AuthContext = Depends(require_two_factor),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.set_active(user_id, False)
    logger.info("admin_user_deactivated", actor_id=principal.user_id, user_id=user_id)
    return ok("User deactivated successfully")


@router.post("/tasks", status_code=201, tags=["tasks"])
async def create_task(
    body: TaskCreateRequest,
    principal: AuthContext = Depends(require_permission(policies.WRITE)),
    runtime: Runtime = Depends(get_runtime),
):
    if body.assigned_to_id and not runtime.store.get_user(body.assigned_to_id):
        raise ValidationError("Assignee does not exist", detail={"field": "assignedToId"})
    task = runtime.store.create_task(
        body.title,
        principal.user_id,
        assigned_to_id=body.assigned_to_id,
        now=runtime.clock(),
    )
    return ok("Task created successfully", {"task": TaskResponse.from_task(task).dump()})


@router.get("/tasks/{task_id}", tags=["tasks"])
async def get_task(
    task_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(policies.READ)),
    runtime: Runtime = Depends(get_runtime),
):
    task = policies.require_resource_ownership(principal, task_id, runtime.store.get_task)
    return ok("Task retrieved successfully", {"task": TaskResponse.from_task(task).dump()})


@router.delete("/tasks/{task_id}", tags=["tasks"])
async def delete_task(
    task_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_manager),
    runtime: Runtime = Depends(get_runtime),
):
    if not runtime.store.delete_task(task_id):
        raise NotFoundError("Resource not found", error_code="RESOURCE_NOT_FOUND")
    logger.info("task_deleted", actor_id=principal.user_id, task_id=task_id)
    return ok("Task deleted successfully")
