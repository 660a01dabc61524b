from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from algoauth.api.dependencies import (
    authenticate,
    client_ip,
    rate_limit_authenticated,
    rate_limit_by_ip,
    runtime_dependency,
)
from algoauth.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
)
from algoauth.service.auth import AuthContext, IssuedSession
from algoauth.service.runtime import Runtime

router = APIRouter(prefix="/auth")


def _session_payload(issued: IssuedSession) -> dict:
    return {
        "user": issued.user.public_dict(),
        "accessToken": issued.access.token,
        "refreshToken": issued.refresh.token,
        "accessTokenExpiresAt": issued.access.expires_at.isoformat(),
        "refreshTokenExpiresAt": issued.refresh.expires_at.isoformat(),
    }


@router.post(
    "/register",
    response_model=Envelope,
    response_model_exclude_none=True,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(rate_limit_by_ip("register", "signup_rate_limit_per_minute"))],
)
async def register(body: RegisterRequest, runtime: Runtime = Depends(runtime_dependency)):
    """Create a credential and open a first session.

    Raises:
        409: If the email or username is taken
        429: If this client registers too often
    """
    issued = (
        await runtime.auth.register(body.email, body.username, body.password)
    ).unwrap()
    return Envelope(message="User registered successfully", data=_session_payload(issued))


@router.post(
    "/login",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
    dependencies=[Depends(rate_limit_by_ip("login", "login_rate_limit_per_minute"))],
)
async def login(
    body: LoginRequest, request: Request, runtime: Runtime = Depends(runtime_dependency)
):
    """Authenticate by email or username; every login opens a new session.

    Raises:
        401: If credentials are invalid or the account is deactivated
        429: If this client attempts too many logins
    """
    issued = (
        await runtime.auth.login(
            body.password,
            email=body.email,
            username=body.username,
            ip_addr=client_ip(request),
        )
    ).unwrap()
    return Envelope(message="Login successful", data=_session_payload(issued))


@router.post("/refresh", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def refresh(body: RefreshRequest, runtime: Runtime = Depends(runtime_dependency)):
    """Exchange a refresh token for a new access token (and a rotated refresh token)."""
    tokens = (await runtime.auth.refresh(body.refresh_token)).unwrap()
    data = {
        "accessToken": tokens.access.token,
        "accessTokenExpiresAt": tokens.access.expires_at.isoformat(),
    }
    if tokens.refresh is not None:
        data["refreshToken"] = tokens.refresh.token
        data["refreshTokenExpiresAt"] = tokens.refresh.expires_at.isoformat()
    return Envelope(message="Token refreshed successfully", data=data)


@router.post("/logout", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    ctx: AuthContext = Depends(authenticate),
    runtime: Runtime = Depends(runtime_dependency),
):
    """Revoke the presented access token and end the given refresh session."""
    refresh_token = body.refresh_token if body else None
    (await runtime.auth.logout(ctx, refresh_token)).unwrap()
    return Envelope(message="Logout successful")


@router.get("/me", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def me(
    ctx: AuthContext = Depends(rate_limit_authenticated()),
    runtime: Runtime = Depends(runtime_dependency),
):
    user = (await runtime.auth.get_current_user(ctx)).unwrap()
    return Envelope(data={"user": user.public_dict()})


@router.post(
    "/forgot-password",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
    dependencies=[Depends(rate_limit_by_ip("forgot", "reset_rate_limit_per_minute"))],
)
async def forgot_password(
    body: ForgotPasswordRequest, runtime: Runtime = Depends(runtime_dependency)
):
    """Send a reset link if the account exists; the answer never says whether it does."""
    (await runtime.auth.forgot_password(body.email)).unwrap()
    return Envelope(message="If the email exists, a reset link has been sent")


@router.post(
    "/reset-password",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
    dependencies=[Depends(rate_limit_by_ip("reset", "reset_rate_limit_per_minute"))],
)
async def reset_password(
    body: ResetPasswordRequest, runtime: Runtime = Depends(runtime_dependency)
):
    (await runtime.auth.reset_password(body.token, body.password)).unwrap()
    return Envelope(message="Password reset successfully")


@router.get(
    "/verify-email/{token}",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def verify_email(token: str, runtime: Runtime = Depends(runtime_dependency)):
    (await runtime.auth.verify_email(token)).unwrap()
    return Envelope(message="Email verified successfully")


@router.post(
    "/resend-verification",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def resend_verification(
    ctx: AuthContext = Depends(authenticate),
    runtime: Runtime = Depends(runtime_dependency),
):
    (await runtime.auth.resend_verification(ctx)).unwrap()
    return Envelope(message="Verification email sent")


@router.post(
    "/change-password",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def change_password(
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(authenticate),
    runtime: Runtime = Depends(runtime_dependency),
):
    """Change the password and sign out every device, including this one."""
    (
        await runtime.auth.change_password(ctx, body.current_password, body.new_password)
    ).unwrap()
    return Envelope(message="Password changed successfully. Please log in again.")
