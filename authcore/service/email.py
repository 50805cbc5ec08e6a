from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from authcore.logging import get_logger, redact_email
from authcore.storage.models import Identity

logger = get_logger(__name__)


class NotificationChannel(Protocol):
    """Out-of-band delivery for one-time codes and recovery tokens."""

    def send_two_factor_code(self, identity: Identity, code: str) -> bool:
        ...

    def send_recovery_token(self, identity: Identity, token: str) -> bool:
        ...


class EmailChannel:
    """SMTP delivery with a log-only fallback when SMTP is not configured."""

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "authcore",
        base_url: Optional[str] = None,
        code_ttl_minutes: int = 5,
        token_ttl_minutes: int = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.code_ttl_minutes = code_ttl_minutes
        self.token_ttl_minutes = token_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send a plain-text email via SMTP.

        Returns True if sent (or logged in dev mode), False otherwise. Secrets in
        the body are never logged.
        """
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain"))

            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redact_email(to_email),
            )

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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
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
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_two_factor_code(self, identity: Identity, code: str) -> bool:
        subject = "Your sign-in verification code"
        text_body = (
            f"Hello {identity.display_name},\n\n"
            f"Your verification code is {code}.\n"
            f"It expires in {self.code_ttl_minutes} minutes and can be used once.\n\n"
            "If you did not try to sign in, change your password."
        )
        return self._send_email(identity.email, subject, text_body)

    def send_recovery_token(self, identity: Identity, token: str) -> bool:
        reset_url = f"{self.base_url}/?reset_token={token}"
        subject = "Reset your password"
        text_body = (
            f"Hello {identity.display_name},\n\n"
            "We received a request to reset your password. Open the link below to "
            "choose a new one:\n\n"
            f"{reset_url}\n\n"
            f"This link expires in {self.token_ttl_minutes} minutes and works once.\n"
            "If you did not request this, you can ignore this email."
        )
        return self._send_email(identity.email, subject, text_body)
