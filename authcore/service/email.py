from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authcore.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """SMTP sender for password-reset and new-login emails.

    When no SMTP host is configured the message is logged instead of sent,
    which is the expected mode for local development and tests.
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
        from_name: str = "Authcore",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 15) -> bool:
        reset_url = f"{self.base_url}/reset?token={token}"
        subject = f"Reset your {self.from_name} password"
        text_body = (
            "We received a request to reset your password.\n\n"
            f"{reset_url}\n\n"
            f"This link expires in {ttl_minutes} minutes. "
            "If you didn't request this, you can ignore this email.\n"
        )
        html_body = (
            "<p>We received a request to reset your password.</p>"
            f'<p><a href="{reset_url}">Reset password</a></p>'
            f"<p>This link expires in {ttl_minutes} minutes. "
            "If you didn't request this, you can ignore this email.</p>"
        )
        return self._send_email(to_email, subject, text_body, html_body)

    def send_new_login_notification(
        self,
        to_email: str,
        *,
        device: str,
        location: str,
        ip_address: Optional[str],
    ) -> bool:
        subject = f"New sign-in to your {self.from_name} account"
        details = f"{device} from {location} ({ip_address or 'unknown IP'})"
        text_body = (
            f"Your account was just used to sign in on {details}.\n\n"
            "If this wasn't you, terminate the session and reset your password.\n"
        )
        html_body = (
            f"<p>Your account was just used to sign in on <strong>{html.escape(details)}</strong>.</p>"
            "<p>If this wasn't you, terminate the session and reset your password.</p>"
        )
        return self._send_email(to_email, subject, text_body, html_body)
