from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query, Request, Response

from latchkey.api.cookies import ResponseCookieAdapter
from latchkey.api.schemas import (
    AuthUrlResponse,
    Envelope,
    OTPChallengeResponse,
    SendOTPRequest,
    SessionResponse,
    SignOutRequest,
    VerifyOTPRequest,
)
from latchkey.logging import get_logger
from latchkey.service.auth import AuthIntent
from latchkey.service.errors import AuthError, InvalidPayloadError
from latchkey.service.oauth import GoogleOAuthAuthenticator
from latchkey.service.otp import EMAIL_OTP_TYPE
from latchkey.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _require_google() -> GoogleOAuthAuthenticator:
    google = get_runtime().google
    if google is None:
        raise AuthError(
            "Google sign-in is not configured",
            status_code=404,
            error_code="oauth_not_configured",
        )
    return google


@router.post("/auth/otp/send", response_model=Envelope, tags=["auth"])
async def send_otp(body: SendOTPRequest):
    """Email a one-time code.

    The response carries the OTP id and the signature phrase the email
    will show; the code itself only travels by email.
    """
    runtime = get_runtime()
    result = await runtime.auth.prepare(
        EMAIL_OTP_TYPE, body.intent, {"email": body.email}
    )
    challenge = result.unwrap()
    return Envelope(
        status="ok",
        data=OTPChallengeResponse(otp_id=challenge.otp_id, signature=challenge.signature),
    )


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOTPRequest, request: Request, response: Response):
    """Redeem an emailed code and sign in (or up), setting the session cookie."""
    runtime = get_runtime()
    cookies = ResponseCookieAdapter(request, response)
    result = await runtime.auth.authenticate(
        cookies,
        EMAIL_OTP_TYPE,
        body.intent,
        {"email": body.email, "otp_id": body.otp_id, "code": body.code},
        **_client_meta(request),
    )
    session = result.unwrap()
    return Envelope(status="ok", data=SessionResponse.from_session(session))


@router.get("/auth/google/url", response_model=Envelope, tags=["auth"])
async def google_auth_url(intent: AuthIntent = Query(AuthIntent.SIGN_IN)):
    google = _require_google()
    return Envelope(status="ok", data=AuthUrlResponse(url=google.get_auth_url(intent)))


@router.get("/auth/google/callback", response_model=Envelope, tags=["auth"])
async def google_callback(
    request: Request,
    response: Response,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    """Complete the Google redirect: check state, then sign in or up per its intent."""
    google = _require_google()
    if error or not code or not state:
        logger.warning("oauth_callback_incomplete", provider_error=error)
        raise InvalidPayloadError(
            "Missing authorization code or state",
            detail={"provider_error": error} if error else None,
        )
    callback = (await google.verify_callback(code, state)).unwrap()

    runtime = get_runtime()
    cookies = ResponseCookieAdapter(request, response)
    if callback.intent is AuthIntent.SIGN_UP:
        result = await runtime.auth.sign_up(
            cookies, callback.identifier, **_client_meta(request)
        )
    else:
        result = await runtime.auth.sign_in(
            cookies, callback.identifier, **_client_meta(request)
        )
    session = result.unwrap()
    return Envelope(status="ok", data=SessionResponse.from_session(session))


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.verify_session(ResponseCookieAdapter(request, response))
    return Envelope(status="ok", data=SessionResponse.from_session(result.unwrap()))


@router.post("/auth/session/refresh", response_model=Envelope, tags=["auth"])
async def refresh_session(request: Request, response: Response):
    runtime = get_runtime()
    cookies = ResponseCookieAdapter(request, response)
    (await runtime.auth.refresh_session(cookies)).unwrap()
    session = (await runtime.auth.verify_session(cookies)).unwrap()
    return Envelope(status="ok", data=SessionResponse.from_session(session))


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def sign_out(
    request: Request,
    response: Response,
    body: Optional[SignOutRequest] = None,
):
    runtime = get_runtime()
    all_sessions = body.all_sessions if body else False
    await runtime.auth.sign_out(
        ResponseCookieAdapter(request, response), all_sessions=all_sessions
    )
    return Envelope(status="ok", data={"signed_out": True})
