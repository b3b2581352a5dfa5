from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import List, Optional, Protocol, Union

from latchkey.config import Settings
from latchkey.logging import get_logger
from latchkey.service.errors import EmailDeliveryError

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutgoingEmail:
    from_address: str
    to: Union[str, List[str]]
    subject: str
    text_content: Optional[str] = None
    html_content: Optional[str] = None

    @property
    def recipients(self) -> List[str]:
        return [self.to] if isinstance(self.to, str) else list(self.to)


class Mailer(Protocol):
    """Outbound mail transport. Raises on delivery failure."""

    async def send_email(self, message: OutgoingEmail) -> None:
        ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class SMTPMailer:
    """SMTP transport for transactional mail.

    Supports:
    - STARTTLS (``use_tls=True``) or implicit TLS
    - Optional login
    - Fallback to logging when no host is configured (dev mode)

    ``smtplib`` is blocking, so delivery runs in a worker thread.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_name: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SMTPMailer":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host)

    def _build_message(self, message: OutgoingEmail) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        if self.from_name:
            msg["From"] = formataddr((self.from_name, message.from_address))
        else:
            msg["From"] = message.from_address
        msg["To"] = ", ".join(message.recipients)
        # Plain text first so clients prefer the HTML part when present
        if message.text_content:
            msg.attach(MIMEText(message.text_content, "plain"))
        if message.html_content:
            msg.attach(MIMEText(message.html_content, "html"))
        return msg

    def _deliver(self, message: OutgoingEmail) -> None:
        msg = self._build_message(message)
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(message.from_address, message.recipients, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(message.from_address, message.recipients, msg.as_string())

    async def send_email(self, message: OutgoingEmail) -> None:
        recipients = [redact_email(r) for r in message.recipients]
        if not self.is_configured:
            body = message.text_content or message.html_content or ""
            logger.info(
                "email_dev_mode",
                to=recipients,
                subject=message.subject,
                body_preview=body[:200],
            )
            return

        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=recipients,
        )
        try:
            await asyncio.to_thread(self._deliver, message)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                user=self.smtp_user,
                error=str(e),
                smtp_status=getattr(e, "smtp_code", None),
            )
            raise EmailDeliveryError() from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipients_refused", to=recipients, error=str(e))
            raise EmailDeliveryError("Recipient address was refused") from e
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "email_send_failed",
                to=recipients,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise EmailDeliveryError() from e
        logger.info("email_sent", to=recipients, subject=message.subject)


__all__ = ["Mailer", "OutgoingEmail", "SMTPMailer", "redact_email"]
