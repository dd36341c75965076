from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bounds on opaque client-supplied strings
MAX_KEY_FIELD_LENGTH = 1024
MAX_CIPHERTEXT_LENGTH = 10 * 1024

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _normalize_unicode(value: str) -> str:
    """Drop zero-width characters and apply NFKC so look-alike emails collapse."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    return unicodedata.normalize("NFKC", cleaned)


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SuccessResponse(ApiModel):
    success: bool = True


class ErrorResponse(ApiModel):
    success: bool = False
    error: str
    code: str


# -- auth -----------------------------------------------------------------


class OtpRequest(ApiModel):
    email: Optional[str] = Field(None, max_length=320)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value).strip().lower()


class OtpVerifyRequest(OtpRequest):
    code: Optional[str] = None


class RefreshTokenRequest(ApiModel):
    refresh_token: Optional[str] = Field(None, alias="refreshToken")


class UserSummary(ApiModel):
    id: str
    email: str
    is_admin: bool = Field(..., alias="isAdmin")


class LoginResponse(ApiModel):
    success: bool = True
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")
    user: UserSummary
    is_new_user: bool = Field(..., alias="isNewUser")


class RefreshResponse(ApiModel):
    success: bool = True
    access_token: str = Field(..., alias="accessToken")
    user: UserSummary


class UserProfile(ApiModel):
    id: str
    email: str
    created_at: datetime = Field(..., alias="createdAt")
    is_admin: bool = Field(..., alias="isAdmin")


# -- encrypted vault ------------------------------------------------------


class VaultStatusResponse(ApiModel):
    is_set_up: bool = Field(..., alias="isSetUp")
    salt: Optional[str] = None
    verifier: Optional[str] = None
    recovery_verifier: Optional[str] = Field(None, alias="recoveryVerifier")


class VaultSetupRequest(ApiModel):
    salt: Optional[str] = Field(None, max_length=MAX_KEY_FIELD_LENGTH)
    verifier: Optional[str] = Field(None, max_length=MAX_KEY_FIELD_LENGTH)
    recovery_verifier: Optional[str] = Field(
        None, alias="recoveryVerifier", max_length=MAX_KEY_FIELD_LENGTH
    )
    allow_overwrite: bool = Field(False, alias="allowOverwrite")


class ChangePasswordRequest(ApiModel):
    salt: Optional[str] = Field(None, max_length=MAX_KEY_FIELD_LENGTH)
    verifier: Optional[str] = Field(None, max_length=MAX_KEY_FIELD_LENGTH)
    recovery_verifier: Optional[str] = Field(
        None, alias="recoveryVerifier", max_length=MAX_KEY_FIELD_LENGTH
    )
    encrypted_data: Optional[str] = Field(
        None, alias="encryptedData", max_length=MAX_CIPHERTEXT_LENGTH
    )
    iv: Optional[str] = Field(None, max_length=64)


class VaultDataRequest(ApiModel):
    data: Optional[str] = Field(None, max_length=MAX_CIPHERTEXT_LENGTH)
    iv: Optional[str] = Field(None, max_length=64)


class VaultDataResponse(ApiModel):
    data: Optional[str] = None
    iv: Optional[str] = None
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")


class VaultSaveResponse(ApiModel):
    success: bool = True
    updated_at: datetime = Field(..., alias="updatedAt")


class HealthResponse(ApiModel):
    status: str = "ok"
    timestamp: datetime
