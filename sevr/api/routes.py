from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from sevr.api.schemas import (
    ChangePasswordRequest,
    LoginResponse,
    OtpRequest,
    OtpVerifyRequest,
    RefreshResponse,
    RefreshTokenRequest,
    SuccessResponse,
    UserProfile,
    UserSummary,
    VaultDataRequest,
    VaultDataResponse,
    VaultSaveResponse,
    VaultSetupRequest,
    VaultStatusResponse,
)
from sevr.logging import get_logger
from sevr.service.errors import (
    AuthenticationError,
    RateLimitedError,
    ServerError,
    ServiceError,
    ValidationError,
)
from sevr.service.runtime import check_rate_limit, get_runtime
from sevr.service.tokens import AccessClaims
from sevr.storage.models import User

logger = get_logger(__name__)


def _client_ip(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def enforce_global_rate_limit(request: Request) -> None:
    """Per-IP budget shared by every route under ``/api``."""
    runtime = get_runtime()
    limit = runtime.settings.rate_limit_requests
    window_seconds = runtime.settings.rate_limit_window_seconds
    allowed, _, retry_after = await check_rate_limit(
        runtime,
        f"ip:{_client_ip(request)}",
        limit,
        window_seconds,
        return_remaining=True,
    )
    if not allowed:
        logger.warning(
            "rate_limited",
            path=request.url.path,
            client_ip=_client_ip(request),
            retry_after=retry_after,
        )
        raise RateLimitedError(retry_after=retry_after)


router = APIRouter(prefix="/api", dependencies=[Depends(enforce_global_rate_limit)])


async def get_user(authorization: Optional[str] = Header(None)) -> AccessClaims:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("No token provided")
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


def _user_summary(user: User) -> UserSummary:
    return UserSummary(id=user.id, email=user.email, is_admin=user.is_admin)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@router.post("/auth/request-otp", response_model=SuccessResponse, tags=["auth"])
async def request_otp(body: OtpRequest):
    runtime = get_runtime()
    try:
        # Delivery talks to SMTP synchronously; keep it off the event loop
        await asyncio.to_thread(runtime.auth.request_code, body.email)
    except ServiceError:
        raise
    except Exception as exc:
        logger.exception("otp_request_failed", exc_info=exc, error_type=type(exc).__name__)
        raise ServerError("Failed to send OTP") from exc
    return SuccessResponse()


@router.post(
    "/auth/verify-otp",
    response_model=LoginResponse,
    response_model_by_alias=True,
    tags=["auth"],
)
async def verify_otp(body: OtpVerifyRequest):
    if not body.email or not body.code:
        raise ValidationError("Email and code are required")
    runtime = get_runtime()
    result = runtime.auth.verify_code(body.email, body.code.strip())
    return LoginResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        user=_user_summary(result.user),
        is_new_user=result.is_new_user,
    )


@router.post(
    "/auth/refresh",
    response_model=RefreshResponse,
    response_model_by_alias=True,
    tags=["auth"],
)
async def refresh_tokens(body: RefreshTokenRequest):
    if not body.refresh_token:
        raise ValidationError("Refresh token is required")
    runtime = get_runtime()
    access_token, user = runtime.auth.refresh(body.refresh_token)
    return RefreshResponse(access_token=access_token, user=_user_summary(user))


@router.post("/auth/logout", response_model=SuccessResponse, tags=["auth"])
async def logout(body: RefreshTokenRequest):
    if not body.refresh_token:
        raise ValidationError("Refresh token is required")
    runtime = get_runtime()
    runtime.auth.logout(body.refresh_token)
    return SuccessResponse()


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------


@router.get(
    "/user/me",
    response_model=UserProfile,
    response_model_by_alias=True,
    tags=["user"],
)
async def get_me(principal: AccessClaims = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_profile(principal.user_id)
    return UserProfile(
        id=user.id, email=user.email, created_at=user.created_at, is_admin=user.is_admin
    )


@router.delete("/user/me", response_model=SuccessResponse, tags=["user"])
async def delete_me(principal: AccessClaims = Depends(get_user)):
    runtime = get_runtime()
    runtime.auth.delete_account(principal.user_id)
    return SuccessResponse()


# ---------------------------------------------------------------------------
# Encrypted vault
# ---------------------------------------------------------------------------


@router.get(
    "/encrypted/status",
    response_model=VaultStatusResponse,
    response_model_by_alias=True,
    tags=["encrypted"],
)
async def encryption_status(principal: AccessClaims = Depends(get_user)):
    runtime = get_runtime()
    status = runtime.vault.get_status(principal.user_id)
    return VaultStatusResponse(
        is_set_up=status.is_set_up,
        salt=status.salt,
        verifier=status.verifier,
        recovery_verifier=status.recovery_verifier,
    )


@router.post("/encrypted/setup", response_model=SuccessResponse, tags=["encrypted"])
async def setup_encryption(
    body: VaultSetupRequest, principal: AccessClaims = Depends(get_user)
):
    runtime = get_runtime()
    runtime.vault.setup(
        principal.user_id,
        body.salt,
        body.verifier,
        body.recovery_verifier,
        allow_overwrite=body.allow_overwrite,
    )
    return SuccessResponse()


@router.post("/encrypted/reset", response_model=SuccessResponse, tags=["encrypted"])
async def reset_encryption(principal: AccessClaims = Depends(get_user)):
    runtime = get_runtime()
    runtime.vault.reset(principal.user_id)
    return SuccessResponse()


@router.post(
    "/encrypted/change-password", response_model=SuccessResponse, tags=["encrypted"]
)
async def change_password(
    body: ChangePasswordRequest, principal: AccessClaims = Depends(get_user)
):
    runtime = get_runtime()
    runtime.vault.change_password(
        principal.user_id,
        body.salt,
        body.verifier,
        body.recovery_verifier,
        ciphertext=body.encrypted_data,
        iv=body.iv,
    )
    return SuccessResponse()


@router.get(
    "/encrypted/data",
    response_model=VaultDataResponse,
    response_model_by_alias=True,
    response_model_exclude_unset=True,
    tags=["encrypted"],
)
async def get_encrypted_data(principal: AccessClaims = Depends(get_user)):
    runtime = get_runtime()
    blob = runtime.vault.get_data(principal.user_id)
    if blob is None:
        return VaultDataResponse(data=None)
    return VaultDataResponse(data=blob.ciphertext, iv=blob.iv, updated_at=blob.updated_at)


@router.put(
    "/encrypted/data",
    response_model=VaultSaveResponse,
    response_model_by_alias=True,
    tags=["encrypted"],
)
async def put_encrypted_data(
    body: VaultDataRequest, principal: AccessClaims = Depends(get_user)
):
    runtime = get_runtime()
    updated_at = runtime.vault.put_data(principal.user_id, body.data, body.iv)
    return VaultSaveResponse(updated_at=updated_at)
