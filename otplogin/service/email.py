from __future__ import annotations

import smtplib
import ssl
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Optional

from otplogin.config import Settings
from otplogin.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailService:
    """SMTP sender for login codes and welcome mail.

    Without an SMTP host the message is logged instead of sent (dev mode).
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
        from_name: str = "OTP Login",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

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
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message. Returns True if the server accepted it."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
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
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=redact_email(to_email), error=str(e)
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
        except OSError as e:
            # ssl.SSLError, TimeoutError and refused connections
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

    def send_otp_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        subject = "Your OTP Code - Login Verification"
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <h2>Your login code</h2>
    <p>Use this code to finish signing in:</p>
    <p style="font-size: 28px; letter-spacing: 6px; font-weight: bold;">{code}</p>
    <p>The code expires in {ttl_minutes} minutes and can only be used once.</p>
    <p>If you did not try to sign in, you can ignore this email.</p>
</body>
</html>
"""
        text_body = (
            f"Your login code is {code}\n\n"
            f"It expires in {ttl_minutes} minutes and can only be used once.\n"
            "If you did not try to sign in, you can ignore this email.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, name: str) -> bool:
        subject = f"Welcome to {self.from_name}"
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <h2>Welcome, {name}!</h2>
    <p>Your account is ready. Sign in any time by requesting a one-time code
    for this address.</p>
</body>
</html>
"""
        text_body = (
            f"Welcome, {name}!\n\n"
            "Your account is ready. Sign in any time by requesting a one-time code "
            "for this address.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)


class EmailDispatcher:
    """Fire-and-forget wrapper around :class:`EmailService`.

    Sends run on a small worker pool so request handlers never wait on SMTP.
    Failures are logged and otherwise dropped.
    """

    def __init__(
        self,
        email: EmailService,
        *,
        executor: Optional[Executor] = None,
        max_workers: int = 2,
    ) -> None:
        self.email = email
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="email"
        )

    def _run(self, kind: str, send: Callable[..., bool], to_email: str, *args: Any) -> bool:
        try:
            sent = send(to_email, *args)
        except Exception as exc:
            logger.error(
                "email_dispatch_crashed",
                kind=kind,
                to=redact_email(to_email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not sent:
            logger.warning("email_dispatch_failed", kind=kind, to=redact_email(to_email))
        return sent

    def send_otp_code(self, to_email: str, code: str, ttl_minutes: int) -> Future:
        return self._executor.submit(
            self._run, "otp", self.email.send_otp_code, to_email, code, ttl_minutes
        )

    def send_welcome(self, to_email: str, name: str) -> Future:
        return self._executor.submit(
            self._run, "welcome", self.email.send_welcome, to_email, name
        )

    def shutdown(self, wait: bool = False) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
