from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Optional, Set

from authcore.logging import get_logger, redact_email

logger = get_logger(__name__)

_HTML_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{sender}</p>
            {footer}
        </div>
    </div>
</body>
</html>
"""


class Notifier:
    """Transactional email for verification, password reset and login alerts.

    Sending is synchronous SMTP; ``dispatch`` runs a send on a worker thread
    without making the caller wait. When SMTP is not configured messages are
    logged instead of sent.
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
        password_reset_ttl_minutes: int = 60,
        email_verification_ttl_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.password_reset_ttl_minutes = password_reset_ttl_minutes
        self.email_verification_ttl_hours = email_verification_ttl_hours
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings) -> "Notifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            password_reset_ttl_minutes=settings.password_reset_ttl_minutes,
            email_verification_ttl_hours=settings.email_verification_ttl_hours,
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _render(self, title: str, body: str, footer: str = "") -> str:
        return _HTML_LAYOUT.format(title=title, body=body, sender=self.from_name, footer=footer)

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
                to=redact_email(to_email),
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
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, token: str, username: str = "") -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        hours = self.email_verification_ttl_hours
        greeting = f"Hi {username}," if username else "Hi,"
        html_body = self._render(
            "Verify your email",
            f"""<p>{greeting}</p>
        <p>Please confirm your email address by clicking the button below:</p>
        <p style="margin: 30px 0;"><a href="{verify_url}" class="button">Verify Email</a></p>
        <p>This link will expire in {hours} hours.</p>""",
            f"<p>If the button doesn't work, copy and paste this URL: {verify_url}</p>",
        )
        text_body = (
            f"{greeting}\n\nPlease confirm your email address by visiting:\n\n{verify_url}\n\n"
            f"This link will expire in {hours} hours.\n\n---\n{self.from_name}\n"
        )
        return self._send_email(to_email, f"Verify your {self.from_name} email", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        minutes = self.password_reset_ttl_minutes
        html_body = self._render(
            "Reset your password",
            f"""<p>We received a request to reset your password. Click the button below to choose a new password:</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>
        <p>This link will expire in {minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>""",
            f"<p>If the button doesn't work, copy and paste this URL: {reset_url}</p>",
        )
        text_body = (
            "We received a request to reset your password. Visit the link below to choose a new one:\n\n"
            f"{reset_url}\n\nThis link will expire in {minutes} minutes.\n\n"
            f"If you didn't request this, you can safely ignore this email.\n\n---\n{self.from_name}\n"
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_login_alert(
        self,
        to_email: str,
        username: str,
        *,
        ip_address: Optional[str],
        device_info: Optional[str],
        reason: str,
        occurred_at: str,
    ) -> bool:
        details = (
            f"Time: {occurred_at}\nIP address: {ip_address or 'unknown'}\n"
            f"Device: {device_info or 'unknown'}"
        )
        html_body = self._render(
            "New sign-in to your account",
            f"""<p>Hi {username},</p>
        <p>We noticed a sign-in to your account that looks different from usual ({reason}).</p>
        <pre>{details}</pre>
        <p>If this was you, no action is needed. Otherwise reset your password right away.</p>""",
        )
        text_body = (
            f"Hi {username},\n\nWe noticed a sign-in to your account that looks different from usual "
            f"({reason}).\n\n{details}\n\nIf this was you, no action is needed. Otherwise reset your "
            f"password right away.\n\n---\n{self.from_name}\n"
        )
        return self._send_email(to_email, "New sign-in to your account", html_body, text_body)

    def dispatch(self, send: Callable[..., bool], *args: Any, **kwargs: Any) -> None:
        """Run ``send`` in the background; failures are logged, never raised."""

        async def _run() -> None:
            try:
                delivered = await asyncio.to_thread(send, *args, **kwargs)
            except Exception as exc:
                logger.error(
                    "notification_dispatch_failed",
                    kind=getattr(send, "__name__", "send"),
                    error=str(exc),
                )
                return
            if not delivered:
                logger.warning(
                    "notification_dispatch_failed", kind=getattr(send, "__name__", "send")
                )

        task = asyncio.get_running_loop().create_task(_run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
