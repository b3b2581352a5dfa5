import pytest

from latchkey.api.schemas import ErrorBody
from latchkey.service.errors import (
    AuthError,
    EmailDeliveryError,
    GoogleOAuthError,
    InvalidSessionError,
    OAuthErrorReason,
    OTPError,
    OTPErrorReason,
    ProviderNotFoundError,
    SessionExpiredError,
    SessionNotFoundError,
    StorageUnavailableError,
    UserAlreadyExistsError,
    UserNotFoundError,
)


@pytest.mark.parametrize(
    "error,status,code",
    [
        (SessionNotFoundError(), 401, "session_not_found"),
        (InvalidSessionError(), 401, "invalid_session"),
        (SessionExpiredError(), 401, "session_expired"),
        (UserNotFoundError(), 404, "user_not_found"),
        (UserAlreadyExistsError("a@b.com"), 409, "user_already_exists"),
        (ProviderNotFoundError("sms"), 400, "provider_not_found"),
        (EmailDeliveryError(), 502, "email_delivery_failed"),
        (StorageUnavailableError(), 503, "storage_unavailable"),
    ],
)
def test_status_and_code(error, status, code):
    assert error.status_code == status
    assert error.error_code == code
    ErrorBody(code=error.error_code, message=error.message)


def test_messages():
    assert SessionNotFoundError().message == "No session cookie found"
    assert InvalidSessionError().message == "Invalid session"
    assert SessionExpiredError().message == "Session expired"
    assert UserNotFoundError().message == "User not found"
    assert ProviderNotFoundError("sms").message == "Provider sms not found"


@pytest.mark.parametrize("reason", list(OTPErrorReason))
def test_otp_error_codes(reason):
    error = OTPError(reason)
    assert error.reason is reason
    assert error.error_code == "otp_" + reason.value.replace("-", "_")
    assert error.status_code == (404 if reason is OTPErrorReason.NOT_FOUND else 400)
    ErrorBody(code=error.error_code, message=error.message)


@pytest.mark.parametrize("reason", list(OAuthErrorReason))
def test_oauth_error_codes(reason):
    error = GoogleOAuthError(reason.value)
    assert error.reason is reason
    assert error.error_code.startswith("oauth_")
    upstream = reason in (
        OAuthErrorReason.TOKEN_EXCHANGE_FAILED,
        OAuthErrorReason.PROFILE_FETCH_FAILED,
    )
    assert error.status_code == (502 if upstream else 400)
    ErrorBody(code=error.error_code, message=error.message)


def test_overrides():
    error = AuthError("nope", status_code=418, error_code="custom", detail={"a": 1})
    assert (error.status_code, error.error_code, error.detail) == (418, "custom", {"a": 1})
    assert str(error) == "nope"


def test_unknown_error_code_rejected():
    with pytest.raises(ValueError):
        ErrorBody(code="made_up", message="x")


@pytest.mark.parametrize(
    "status,code",
    [(403, "forbidden"), (405, "method_not_allowed"), (418, "validation_error"), (502, "server_error")],
)
def test_status_fallback_codes(status, code):
    from latchkey.api.error_handling import _error_code_for_status

    assert _error_code_for_status(status) == code
    ErrorBody(code=code, message="x")
