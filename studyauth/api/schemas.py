from __future__ import annotations

from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "token_expired",
    "token_already_invalidated",
    "otp_invalid",
    "otp_expired",
    "otp_mismatch",
    "otp_exhausted",
    "otp_already_consumed",
    "forbidden",
    "account_disabled",
    "not_found",
    "conflict",
    "email_exists",
    "username_exists",
    "phone_exists",
    "service_unavailable",
    "timeout",
    "internal_error",
})

OTPPurposeField = Literal["login", "password_reset", "email_verification"]


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Requests carry raw strings; the service normalizes and validates them so
# HTTP and direct callers get the same errors.
class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=1024)
    phone: Optional[str] = Field(default=None, max_length=32)


class LoginRequest(BaseModel):
    password: str = Field(..., max_length=1024)
    email: Optional[str] = Field(default=None, max_length=320)
    username: Optional[str] = Field(default=None, max_length=64)
    device_info: Optional[str] = Field(default=None, max_length=256)


class OTPRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=32)
    purpose: OTPPurposeField = "login"


class OTPVerifyRequest(BaseModel):
    code: str = Field(..., max_length=16)
    email: Optional[str] = Field(default=None, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=32)
    purpose: Literal["login", "email_verification"] = "login"
    challenge_id: Optional[str] = Field(default=None, max_length=64)
    device_info: Optional[str] = Field(default=None, max_length=256)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ForgotPasswordRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=32)


class PasswordResetRequest(BaseModel):
    code: str = Field(..., max_length=16)
    new_password: str = Field(..., max_length=1024)
    confirm_password: Optional[str] = Field(default=None, max_length=1024)
    email: Optional[str] = Field(default=None, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=32)
    challenge_id: Optional[str] = Field(default=None, max_length=64)


class EmailVerificationRequest(BaseModel):
    email: str = Field(..., max_length=320)


class RoleChangeRequest(BaseModel):
    role: Literal["student", "instructor", "admin", "super_admin"]


class UserResponse(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    phone: Optional[str] = None
    role: str
    is_active: bool
    email_verified: bool
    email_verified_at: Optional[str] = None
    last_login_at: Optional[str] = None
    created_at: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse
    session_id: Optional[str] = None
    created: bool = False


class OTPDispatchResponse(BaseModel):
    channel: str
    destination: str
    purpose: str
    challenge_id: str
    expires_at: str


class SessionResponse(BaseModel):
    id: str
    created_at: str
    expires_at: str
    device_info: Optional[str] = None
    ip_addr: Optional[str] = None


class SessionListResponse(BaseModel):
    items: List[SessionResponse]
