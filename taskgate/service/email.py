from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from html import escape
from typing import Optional

from taskgate.config import Settings
from taskgate.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1>{heading}</h1>
    <p>{intro}</p>
    <p style="margin: 30px 0;">
      <a href="{url}" style="background: {color}; color: #fff; padding: 12px 24px;
         border-radius: 4px; text-decoration: none; font-weight: 600;">{label}</a>
    </p>
    <p>{expiry}</p>
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470; word-break: break-all;">
      If the button doesn't work, paste this link into your browser: {url}
    </p>
  </div>
</body>
</html>
"""


def redact_address(address: str) -> str:
    local, at, domain = address.partition("@")
    if not at:
        return "redacted"
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Sends the account emails: address verification and password reset.

    Links point at the frontend (``APP_BASE_URL``), which posts the token back
    to the API. With no SMTP host configured the email is logged and counted
    as sent so local setups work without a mail server.
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
        from_name: str = "Task Manager",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
        verification_ttl_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
            verification_ttl_hours=settings.email_verification_ttl_hours,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        return redact_address(email)

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            server.starttls(context=context)
            return server
        return smtplib.SMTP_SSL(
            self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
        )

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Deliver one message; False on any SMTP or socket failure."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject, body=text_body[:200])
            return True

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((self.from_name, self.from_email))
        message["To"] = to_email
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")

        try:
            with self._connect() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed", to=recipient, host=self.smtp_host, smtp_code=exc.smtp_code
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def _compose(
        self, *, heading: str, intro: str, url: str, label: str, color: str, expiry: str
    ) -> tuple[str, str]:
        html_body = _TEMPLATE.format(
            heading=escape(heading),
            intro=escape(intro),
            url=escape(url, quote=True),
            label=escape(label),
            color=color,
            expiry=escape(expiry),
        )
        text_body = f"{heading}\n\n{intro}\n\n{url}\n\n{expiry}\n"
        return html_body, text_body

    def send_password_reset(self, to_email: str, token: str) -> bool:
        html_body, text_body = self._compose(
            heading="Reset your password",
            intro="We received a request to reset your password. "
            "If you didn't make it, you can ignore this email.",
            url=f"{self.base_url}/reset-password?token={token}",
            label="Reset Password",
            color="#dc3545",
            expiry=f"This link will expire in {self.reset_ttl_minutes} minutes.",
        )
        return self._send_email(to_email, "Reset Your Password", html_body, text_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        html_body, text_body = self._compose(
            heading="Verify your email",
            intro="Thanks for signing up! Confirm your address to finish setting up your account.",
            url=f"{self.base_url}/verify-email?token={token}",
            label="Verify Email",
            color="#007bff",
            expiry=f"This link will expire in {self.verification_ttl_hours} hours.",
        )
        return self._send_email(to_email, "Verify Your Email Address", html_body, text_body)
