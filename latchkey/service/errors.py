from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthError(Exception):
    """Base class for authentication failures carried in a :class:`Result`.

    Each subclass pins a stable ``error_code`` and the HTTP ``status_code``
    the API layer answers with. Services return these inside failed results
    rather than raising them; the HTTP routes raise them so the registered
    exception handler can render the error envelope.
    """

    status_code: int = 400
    error_code: str = "auth_error"
    default_message: str = "Authentication failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class InvalidPayloadError(AuthError):
    """Verifier payload failed validation (400)."""
    status_code = 400
    error_code = "invalid_payload"
    default_message = "Invalid payload"


class ProviderNotFoundError(AuthError):
    """No verifier is registered for the requested type (400)."""
    status_code = 400
    error_code = "provider_not_found"

    def __init__(self, provider_type: str, **kwargs) -> None:
        super().__init__(
            f"Provider {provider_type} not found",
            detail={"type": provider_type},
            **kwargs,
        )
        self.provider_type = provider_type


class PrepareNotSupportedError(AuthError):
    """Verifier has no prepare step (400)."""
    status_code = 400
    error_code = "prepare_not_supported"

    def __init__(self, provider_type: str, **kwargs) -> None:
        super().__init__(
            f"Provider {provider_type} does not support prepare",
            detail={"type": provider_type},
            **kwargs,
        )
        self.provider_type = provider_type


class SessionNotFoundError(AuthError):
    """No session cookie on the request (401)."""
    status_code = 401
    error_code = "session_not_found"
    default_message = "No session cookie found"


class InvalidSessionError(AuthError):
    """Cookie signature, token or stored state did not check out (401)."""
    status_code = 401
    error_code = "invalid_session"
    default_message = "Invalid session"


class SessionExpiredError(AuthError):
    """Session is past its expiry (401)."""
    status_code = 401
    error_code = "session_expired"
    default_message = "Session expired"


class UserNotFoundError(AuthError):
    """Sign-in for an identifier with no user (404)."""
    status_code = 404
    error_code = "user_not_found"
    default_message = "User not found"


class UserAlreadyExistsError(AuthError):
    """Sign-up for an identifier that already has a user (409)."""
    status_code = 409
    error_code = "user_already_exists"

    def __init__(self, identifier_value: Optional[str] = None, **kwargs) -> None:
        if identifier_value:
            message = f"User with {identifier_value} already exists"
        else:
            message = "User already exists"
        super().__init__(message, **kwargs)


class EmailDeliveryError(AuthError):
    """The mailer could not deliver a message (502)."""
    status_code = 502
    error_code = "email_delivery_failed"
    default_message = "Failed to send email"


class StorageUnavailableError(AuthError):
    """Storage raised unexpectedly while serving a flow (503)."""
    status_code = 503
    error_code = "storage_unavailable"
    default_message = "Storage is unavailable"


class OTPErrorReason(str, Enum):
    NOT_FOUND = "not-found"
    EXPIRED = "expired"
    INVALID_CODE = "invalid-code"
    ALREADY_USED = "already-used"
    EMAIL_MISMATCH = "email-mismatch"


_OTP_MESSAGES = {
    OTPErrorReason.NOT_FOUND: "OTP not found",
    OTPErrorReason.EXPIRED: "OTP has expired",
    OTPErrorReason.INVALID_CODE: "Invalid OTP code",
    OTPErrorReason.ALREADY_USED: "OTP has already been used",
    OTPErrorReason.EMAIL_MISMATCH: "Email does not match OTP",
}


class OTPError(AuthError):
    """Email OTP verification failed for ``reason``."""
    status_code = 400

    def __init__(self, reason: OTPErrorReason | str, **kwargs) -> None:
        reason = OTPErrorReason(reason)
        kwargs.setdefault("error_code", "otp_" + reason.value.replace("-", "_"))
        if reason is OTPErrorReason.NOT_FOUND:
            kwargs.setdefault("status_code", 404)
        super().__init__(_OTP_MESSAGES[reason], **kwargs)
        self.reason = reason


class OAuthErrorReason(str, Enum):
    INVALID_STATE = "invalid-state"
    EXPIRED_STATE = "expired-state"
    INVALID_CODE = "invalid-code"
    TOKEN_EXCHANGE_FAILED = "token-exchange-failed"
    PROFILE_FETCH_FAILED = "profile-fetch-failed"


_OAUTH_MESSAGES = {
    OAuthErrorReason.INVALID_STATE: "Invalid or expired state token",
    OAuthErrorReason.EXPIRED_STATE: "State token has expired",
    OAuthErrorReason.INVALID_CODE: "Invalid or expired authorization code",
    OAuthErrorReason.TOKEN_EXCHANGE_FAILED: "Failed to exchange code for tokens",
    OAuthErrorReason.PROFILE_FETCH_FAILED: "Failed to fetch user profile from Google",
}

# Failures on Google's side rather than the caller's
_OAUTH_UPSTREAM = {
    OAuthErrorReason.TOKEN_EXCHANGE_FAILED,
    OAuthErrorReason.PROFILE_FETCH_FAILED,
}


class GoogleOAuthError(AuthError):
    """Google OAuth callback verification failed for ``reason``."""
    status_code = 400

    def __init__(self, reason: OAuthErrorReason | str, **kwargs) -> None:
        reason = OAuthErrorReason(reason)
        kwargs.setdefault("error_code", "oauth_" + reason.value.replace("-", "_"))
        if reason in _OAUTH_UPSTREAM:
            kwargs.setdefault("status_code", 502)
        super().__init__(_OAUTH_MESSAGES[reason], **kwargs)
        self.reason = reason


__all__ = [
    "AuthError",
    "EmailDeliveryError",
    "GoogleOAuthError",
    "InvalidPayloadError",
    "InvalidSessionError",
    "OAuthErrorReason",
    "OTPError",
    "OTPErrorReason",
    "PrepareNotSupportedError",
    "ProviderNotFoundError",
    "SessionExpiredError",
    "SessionNotFoundError",
    "StorageUnavailableError",
    "UserAlreadyExistsError",
    "UserNotFoundError",
]
