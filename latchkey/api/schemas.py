from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from latchkey.service.auth import AuthIntent
from latchkey.service.errors import OAuthErrorReason, OTPErrorReason
from latchkey.service.validation import validate_email
from latchkey.storage.models import Session

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "method_not_allowed",
        "conflict",
        "server_error",
        "invalid_payload",
        "provider_not_found",
        "prepare_not_supported",
        "session_not_found",
        "invalid_session",
        "session_expired",
        "user_not_found",
        "user_already_exists",
        "email_delivery_failed",
        "storage_unavailable",
        "oauth_not_configured",
    }
    | {"otp_" + r.value.replace("-", "_") for r in OTPErrorReason}
    | {"oauth_" + r.value.replace("-", "_") for r in OAuthErrorReason}
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

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


class SendOTPRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=254)
    intent: AuthIntent = AuthIntent.SIGN_IN

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)


class VerifyOTPRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=254)
    otp_id: str = Field(..., min_length=1, max_length=64)
    code: str = Field(..., min_length=1, max_length=16)
    intent: AuthIntent = AuthIntent.SIGN_IN

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)


class SignOutRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    all_sessions: bool = False


class OTPChallengeResponse(BaseModel):
    otp_id: str
    signature: str


class AuthUrlResponse(BaseModel):
    url: str


class SessionResponse(BaseModel):
    """Client-facing view of a session; never carries the secret token."""

    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime
    refreshed_at: datetime
    mfa_enabled: bool
    mfa_verified: bool

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            user_id=session.user_id,
            expires_at=session.expires_at,
            created_at=session.created_at,
            refreshed_at=session.refreshed_at,
            mfa_enabled=session.mfa_enabled,
            mfa_verified=session.mfa_verified,
        )
