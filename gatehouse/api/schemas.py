from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatehouse.storage.models import ActiveSession, User

_STABLE_ERROR_CODES = {
    "validation_error",
    "incorrect_credentials",
    "unauthorized",
    "account_unconfirmed",
    "already_authenticated",
    "forbidden",
    "not_found",
    "invalid_or_expired_token",
    "email_no_longer_available",
    "conflict",
    "server_error",
}

# Passwords are capped again by the validation layer; this only bounds request size
_MAX_INPUT = 1024


class ErrorBody(BaseModel):
    """Error envelope body with a stable ``code`` clients can branch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _STABLE_ERROR_CODES:
            return "server_error"
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SignupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=_MAX_INPUT)
    password: str = Field(..., max_length=_MAX_INPUT)
    password_confirmation: str = Field(..., max_length=_MAX_INPUT)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=_MAX_INPUT)
    password: str = Field(..., max_length=_MAX_INPUT)
    remember_me: bool = False


class EmailRequest(BaseModel):
    """Body of confirmation-resend and password-reset requests."""

    email: str = Field(..., max_length=_MAX_INPUT)


class PasswordResetConfirm(BaseModel):
    password: str = Field(..., max_length=_MAX_INPUT)
    password_confirmation: str = Field(..., max_length=_MAX_INPUT)


class AccountUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    current_password: str = Field(..., max_length=_MAX_INPUT)
    email: Optional[str] = Field(default=None, max_length=_MAX_INPUT)
    password: Optional[str] = Field(default=None, max_length=_MAX_INPUT)
    password_confirmation: Optional[str] = Field(default=None, max_length=_MAX_INPUT)


class UserResponse(BaseModel):
    id: str
    email: str
    unconfirmed_email: Optional[str] = None
    confirmation_state: str
    confirmed_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            unconfirmed_email=user.unconfirmed_email,
            confirmation_state=user.confirmation_state.value,
            confirmed_at=user.confirmed_at,
            created_at=user.created_at,
        )


class ActiveSessionResponse(BaseModel):
    id: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    current: bool = False

    @classmethod
    def from_session(
        cls, active_session: ActiveSession, *, current_id: Optional[str] = None
    ) -> "ActiveSessionResponse":
        return cls(
            id=active_session.id,
            user_agent=active_session.user_agent,
            ip_address=active_session.ip_address,
            created_at=active_session.created_at,
            current=active_session.id == current_id,
        )


class SessionListResponse(BaseModel):
    items: List[ActiveSessionResponse]


class SignInResponse(BaseModel):
    user: UserResponse
    active_session_id: str
    remembered: bool
    return_to: Optional[str] = None


class MessageResponse(BaseModel):
    message: str
