from __future__ import annotations

import smtplib
import ssl
from concurrent.futures import Future, ThreadPoolExecutor
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from findclass.logging import get_logger
from findclass.storage.models import VerificationPurpose

logger = get_logger(__name__)

_SUBJECTS = {
    VerificationPurpose.REGISTER: "Confirm your FindClass email",
    VerificationPurpose.LOGIN: "Your FindClass sign-in code",
    VerificationPurpose.PASSWORD_RESET: "Reset your FindClass password",
}

_INTROS = {
    VerificationPurpose.REGISTER: "Thanks for signing up! Enter this code to confirm your email address:",
    VerificationPurpose.LOGIN: "Use this code to finish signing in:",
    VerificationPurpose.PASSWORD_RESET: "We received a request to reset your password. Enter this code to choose a new one:",
}


class EmailService:
    """Delivers verification codes over SMTP.

    ``send`` hands delivery to a background worker and returns immediately;
    delivery failures are logged and never reach the caller. When no SMTP
    host is configured the message is logged instead of sent (dev mode).
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
        from_name: str = "FindClass",
        code_ttl_seconds: int = 300,
        max_workers: int = 2,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.code_ttl_seconds = code_ttl_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="email"
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def send(self, email: str, purpose: VerificationPurpose, code: str) -> None:
        """Queue a verification code for delivery without waiting on SMTP."""
        future = self._executor.submit(self.send_verification_code, email, purpose, code)
        future.add_done_callback(self._log_delivery_failure)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _log_delivery_failure(self, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(
                "email_delivery_crashed", error_type=type(exc).__name__, error=str(exc)
            )

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send_verification_code(
        self, to_email: str, purpose: VerificationPurpose, code: str
    ) -> bool:
        subject = _SUBJECTS[purpose]
        intro = _INTROS[purpose]
        minutes = max(self.code_ttl_seconds // 60, 1)

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{subject}</h1>
        <p>{intro}</p>
        <p class="code">{code}</p>
        <p>This code will expire in {minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>FindClass</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""{subject}

{intro}

    {code}

This code will expire in {minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
FindClass
"""

        return self._send_email(to_email, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
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
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
