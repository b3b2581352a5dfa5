from __future__ import annotations

import hmac
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from latchkey.config import Settings
from latchkey.logging import get_logger
from latchkey.service.auth import AuthIntent
from latchkey.service.email import Mailer, OutgoingEmail, redact_email
from latchkey.service.errors import (
    AuthError,
    EmailDeliveryError,
    InvalidPayloadError,
    OTPError,
    OTPErrorReason,
    StorageUnavailableError,
)
from latchkey.service.results import Result
from latchkey.service.signature import generate_signature
from latchkey.service.validation import validate_email
from latchkey.storage.models import OTP, Identifier

logger = get_logger(__name__)

EMAIL_OTP_TYPE = "email-otp"

DEFAULT_TEXT_TEMPLATE = (
    "Your verification code is: {code}\n"
    "\n"
    "Check that your sign-in screen shows: {signature}\n"
    "\n"
    "This code will expire in {minutes} minutes."
)

DEFAULT_HTML_TEMPLATE = """\
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1 style="color: #1a1a1a; font-size: 24px; margin-bottom: 20px;">Your verification code</h1>
    <p style="font-size: 32px; font-weight: 600; letter-spacing: 6px; margin: 24px 0;">{code}</p>
    <p>Check that your sign-in screen shows <strong>{signature}</strong>.</p>
    <p style="color: #666; font-size: 14px;">This code will expire in {minutes} minutes.</p>
    <p style="color: #666; font-size: 14px;">If you didn't request this code, you can safely ignore this email.</p>
</body>
</html>
"""


class OTPStore(Protocol):
    async def create_otp(
        self, email: str, code: str, expires_at: datetime, signature: str
    ) -> OTP: ...

    async def get_otp_by_id(self, otp_id: str) -> Optional[OTP]: ...

    async def mark_otp_as_used(self, otp_id: str) -> bool: ...


@dataclass(frozen=True)
class OTPChallenge:
    otp_id: str
    signature: str


class SendOTPPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return validate_email(value)


class VerifyOTPPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    email: str
    otp_id: str = Field(..., alias="otpId", min_length=1)
    code: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return validate_email(value)


def _parse(model: type[BaseModel], data: Any):
    if not isinstance(data, Mapping):
        raise InvalidPayloadError("Payload must be an object")
    try:
        return model.model_validate(dict(data))
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        raise InvalidPayloadError(detail={"fields": fields}) from exc


def generate_code(length: int) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


class EmailOTPAuthenticator:
    """Email one-time-password verifier (type ``"email-otp"``).

    ``prepare`` mails a numeric code and returns the OTP id plus a
    correlation signature; ``authenticate`` redeems that code once. Message
    templates are ``str.format`` strings receiving ``code``, ``signature``,
    ``minutes`` and ``email``.
    """

    type = EMAIL_OTP_TYPE

    def __init__(
        self,
        store: OTPStore,
        mailer: Mailer,
        *,
        from_address: str = "noreply@example.com",
        subject: str = "Your verification code",
        text_template: str = DEFAULT_TEXT_TEMPLATE,
        html_template: Optional[str] = DEFAULT_HTML_TEMPLATE,
        ttl_seconds: int = 300,
        length: int = 6,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.from_address = from_address
        self.subject = subject
        self.text_template = text_template
        self.html_template = html_template
        self.ttl = timedelta(seconds=ttl_seconds)
        self.length = length
        self.logger = logger

    @classmethod
    def from_settings(
        cls, store: OTPStore, mailer: Mailer, settings: Settings
    ) -> "EmailOTPAuthenticator":
        return cls(
            store,
            mailer,
            from_address=settings.email_from_address,
            subject=settings.otp_email_subject,
            ttl_seconds=settings.otp_ttl_seconds,
            length=settings.otp_length,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _render(self, email: str, code: str, signature: str) -> OutgoingEmail:
        context = {
            "code": code,
            "signature": signature,
            "minutes": max(1, math.ceil(self.ttl.total_seconds() / 60)),
            "email": email,
        }
        return OutgoingEmail(
            from_address=self.from_address,
            to=email,
            subject=self.subject.format(**context),
            text_content=self.text_template.format(**context),
            html_content=self.html_template.format(**context) if self.html_template else None,
        )

    async def send_otp(self, email: str) -> Result[OTPChallenge]:
        try:
            email = validate_email(email)
        except ValueError as exc:
            return Result.fail(InvalidPayloadError(str(exc)))

        code = generate_code(self.length)
        signature = generate_signature()
        try:
            otp = await self.store.create_otp(
                email, code, self._now() + self.ttl, signature
            )
        except Exception as exc:
            self.logger.error("otp_store_failed", error=str(exc))
            return Result.fail(StorageUnavailableError())

        try:
            await self.mailer.send_email(self._render(email, code, signature))
        except EmailDeliveryError as exc:
            return Result.fail(exc)
        except Exception as exc:
            self.logger.error(
                "otp_email_failed",
                otp_id=otp.id,
                to=redact_email(email),
                error=str(exc),
            )
            return Result.fail(EmailDeliveryError())

        self.logger.info("otp_sent", otp_id=otp.id, to=redact_email(email))
        return Result.ok(OTPChallenge(otp_id=otp.id, signature=signature))

    async def verify_otp(self, email: str, otp_id: str, code: str) -> Result[Identifier]:
        """Redeem ``code`` for ``otp_id``.

        Checks run in a fixed order and the first failure wins: email match,
        unused, unexpired, code match. The OTP is consumed only after every
        check passes, through the store's conditional "mark used if unused"
        write; losing that race reports ``already-used``.
        """
        try:
            email = validate_email(email)
        except ValueError as exc:
            return Result.fail(InvalidPayloadError(str(exc)))

        try:
            otp = await self.store.get_otp_by_id(otp_id)
        except Exception as exc:
            self.logger.error("otp_lookup_failed", otp_id=otp_id, error=str(exc))
            return Result.fail(StorageUnavailableError())
        if otp is None:
            return self._reject(otp_id, OTPErrorReason.NOT_FOUND)
        if otp.email != email:
            return self._reject(otp_id, OTPErrorReason.EMAIL_MISMATCH)
        if otp.used:
            return self._reject(otp_id, OTPErrorReason.ALREADY_USED)
        if otp.is_expired(self._now()):
            return self._reject(otp_id, OTPErrorReason.EXPIRED)
        if not hmac.compare_digest(otp.code.encode("utf-8"), code.encode("utf-8")):
            return self._reject(otp_id, OTPErrorReason.INVALID_CODE)

        try:
            consumed = await self.store.mark_otp_as_used(otp.id)
        except Exception as exc:
            self.logger.error("otp_consume_failed", otp_id=otp_id, error=str(exc))
            return Result.fail(StorageUnavailableError())
        if not consumed:
            return self._reject(otp_id, OTPErrorReason.ALREADY_USED)

        self.logger.info("otp_verified", otp_id=otp.id)
        return Result.ok(Identifier(type=EMAIL_OTP_TYPE, value=email))

    def _reject(self, otp_id: str, reason: OTPErrorReason) -> Result[Identifier]:
        self.logger.warning("otp_verify_failed", otp_id=otp_id, reason=reason.value)
        return Result.fail(OTPError(reason))

    async def prepare(self, intent: AuthIntent, data: Any) -> Result[OTPChallenge]:
        try:
            payload = _parse(SendOTPPayload, data)
        except AuthError as exc:
            return Result.fail(exc)
        return await self.send_otp(payload.email)

    async def authenticate(self, intent: AuthIntent, data: Any) -> Result[Identifier]:
        try:
            payload = _parse(VerifyOTPPayload, data)
        except AuthError as exc:
            return Result.fail(exc)
        return await self.verify_otp(payload.email, payload.otp_id, payload.code)


__all__ = [
    "EMAIL_OTP_TYPE",
    "EmailOTPAuthenticator",
    "OTPChallenge",
    "OTPStore",
    "SendOTPPayload",
    "VerifyOTPPayload",
    "generate_code",
]
