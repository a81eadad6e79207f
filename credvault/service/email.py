from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from credvault.logging import get_logger

logger = get_logger(__name__)


class NotificationChannel(Protocol):
    def send(
        self, to_email: str, subject: str, text_body: str, html_body: Optional[str] = None
    ) -> bool: ...

    def send_email_verification(self, to_email: str, token: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str) -> bool: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured the message is logged instead of sent,
    which keeps local development and tests free of a mail server. Delivery
    problems are reported through the boolean return value; callers decide
    whether a failed delivery matters.
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
        from_name: str = "Credvault",
        base_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent successfully."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
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
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(e.recipients),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # connection refused, DNS failure, timeout
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email/{token}"
        subject = "Verify your email address"
        text_body = (
            "Thanks for signing up! Please verify your email address by visiting the link below:\n\n"
            f"{verify_url}\n\n"
            f"This link will expire in {self.verification_ttl_hours} hours.\n"
        )
        html_body = (
            "<p>Thanks for signing up! Please verify your email address:</p>"
            f'<p><a href="{verify_url}">Verify Email</a></p>'
            f"<p>This link will expire in {self.verification_ttl_hours} hours.</p>"
        )
        return self.send(to_email, subject, text_body, html_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password/{token}"
        subject = "Password reset request"
        text_body = (
            "You are receiving this email because a password reset was requested for your account.\n\n"
            f"{reset_url}\n\n"
            f"This link will expire in {self.reset_ttl_minutes} minutes. "
            "If you didn't request this, you can safely ignore this email.\n"
        )
        html_body = (
            "<p>A password reset was requested for your account.</p>"
            f'<p><a href="{reset_url}">Reset Password</a></p>'
            f"<p>This link will expire in {self.reset_ttl_minutes} minutes.</p>"
        )
        return self.send(to_email, subject, text_body, html_body)
