from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from gatehouse.service.sanitize import MAX_EMAIL_LENGTH

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "csrf_failed",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "service_unavailable",
    "timeout",
}


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _strip_email(value: str) -> str:
    value = value.strip()
    if not value or len(value) > MAX_EMAIL_LENGTH:
        raise ValueError("invalid email length")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _strip_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _strip_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)


class PasswordValidateRequest(BaseModel):
    password: str = Field(..., max_length=1024)


class RevokeSessionsRequest(BaseModel):
    reason: str = Field(default="revoked", pattern="^(revoked|security|logout)$")


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    created_at: datetime


class AuthResponse(BaseModel):
    user_id: str
    role: str
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    csrf_token: Optional[str] = None
    password_change_required: bool = False


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: Optional[str] = None


class CsrfResponse(BaseModel):
    csrf_token: str
    header_name: str
    cookie_name: str
    expires_in: int


class SessionResponse(BaseModel):
    id: str
    user_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    platform: Optional[str] = None
    browser: Optional[str] = None
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    is_active: bool
    is_current: bool = False
    revoked_reason: Optional[str] = None


class SessionListResponse(BaseModel):
    items: List[SessionResponse]
    count: int


class PasswordValidationResponse(BaseModel):
    is_valid: bool
    is_strong: bool
    score: int
    errors: List[str]


class RevokeSessionsResponse(BaseModel):
    user_id: str
    revoked_sessions: int


class AuditChangeResponse(BaseModel):
    field: str
    old: Optional[Any] = None
    new: Optional[Any] = None


class AuditEntryResponse(BaseModel):
    actor_id: Optional[str] = None
    role: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    changes: List[AuditChangeResponse] = Field(default_factory=list)
    success: bool
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    correlation_id: Optional[str] = None
    error_message: Optional[str] = None


class AuditListResponse(BaseModel):
    items: List[AuditEntryResponse]
    count: int
