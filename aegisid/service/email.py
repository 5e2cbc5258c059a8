from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional, Protocol

from aegisid.logging import get_logger

logger = get_logger(__name__)


class EmailDeliveryError(Exception):
    """The transport refused or failed to deliver a message."""


class EmailSender(Protocol):
    async def send(
        self, to: str, subject: str, text: str, html: Optional[str] = None
    ) -> str: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailDispatcher:
    """SMTP transport for already-rendered messages.

    When no SMTP host is configured the message is logged instead of sent,
    which keeps local development and demos working without a mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "AegisID",
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send(
        self, to: str, subject: str, text: str, html: Optional[str] = None
    ) -> str:
        """Deliver one message and return its Message-ID."""
        message_id = make_msgid(domain=(self.from_email or "aegisid.local").split("@")[-1])
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to),
                subject=subject,
                message_id=message_id,
            )
            return message_id
        await asyncio.to_thread(self._send_smtp, to, subject, text, html, message_id)
        return message_id

    def _open_connection(self) -> smtplib.SMTP:
        """STARTTLS on the submission port, or implicit TLS when ``smtp_use_tls`` is off."""
        context = ssl.create_default_context()
        if not self.smtp_use_tls:
            return smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
        try:
            server.starttls(context=context)
        except Exception:
            server.close()
            raise
        return server

    def _send_smtp(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str],
        message_id: str,
    ) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))

        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_email),
        )
        try:
            with self._open_connection() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            raise EmailDeliveryError("smtp authentication failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            raise EmailDeliveryError("recipient refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise EmailDeliveryError("smtp error") from e
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            raise EmailDeliveryError("smtp transport error") from e
        logger.info("email_sent", to=redact_email(to_email), subject=subject)


def render_login_code(code: str, ttl_minutes: int, product: str = "AegisID") -> tuple[str, str, str]:
    """Return subject, text and HTML for a sign-in verification code."""
    subject = f"Your {product} verification code"
    text_body = f"""Your {product} verification code is: {code}

It expires in {ttl_minutes} minutes. If you did not try to sign in, change your password.

---
{product}
"""
    html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <h1>Your verification code</h1>
    <p style="font-size: 28px; letter-spacing: 4px; font-weight: 700;">{code}</p>
    <p>It expires in {ttl_minutes} minutes.</p>
    <p>If you did not try to sign in, change your password.</p>
</body>
</html>
"""
    return subject, text_body, html_body


def render_new_device_alert(
    device_name: str,
    ip_address: Optional[str],
    location: Optional[str],
    product: str = "AegisID",
) -> tuple[str, str, str]:
    subject = f"New sign-in to your {product} account"
    where = location or "an unknown location"
    text_body = f"""We noticed a sign-in from a new device.

Device: {device_name}
IP address: {ip_address or "unknown"}
Location: {where}

If this was you, no action is needed. Otherwise change your password and review your active sessions.

---
{product}
"""
    html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <h1>New sign-in detected</h1>
    <p>Device: {device_name}<br>IP address: {ip_address or "unknown"}<br>Location: {where}</p>
    <p>If this was you, no action is needed. Otherwise change your password and review your active sessions.</p>
</body>
</html>
"""
    return subject, text_body, html_body
