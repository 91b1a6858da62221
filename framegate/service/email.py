from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from framegate.config import Settings
from framegate.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <div style="max-width: 560px; margin: 0 auto; padding: 32px 16px;">
    <h1 style="font-size: 20px;">{title}</h1>
    {paragraphs}
    {action}
    <p style="margin-top: 32px; font-size: 12px; color: #5b6470;">{sender}</p>
  </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for account flows.

    Sends over SMTP (STARTTLS or implicit TLS). When no SMTP host is configured
    the message is logged instead, which is the normal mode for development.
    Sending never raises; callers get ``False`` and a log line on failure.
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
        from_name: str = "FrameGate",
        base_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
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
            verification_ttl_hours=settings.email_verification_ttl_hours,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _compose(
        self,
        title: str,
        paragraphs: list[str],
        link: Optional[tuple[str, str]] = None,
    ) -> tuple[str, str]:
        """Return ``(html, text)`` bodies for one message."""

        html_paragraphs = "\n    ".join(f"<p>{escape(p)}</p>" for p in paragraphs)
        action = ""
        text_lines = [title, ""] + paragraphs
        if link:
            label, url = link
            action = (
                f'<p style="margin: 24px 0;"><a href="{escape(url, quote=True)}" '
                f'style="background: #3d5a80; color: #fff; padding: 10px 20px; '
                f'border-radius: 6px; text-decoration: none;">{escape(label)}</a></p>'
                f"<p style=\"font-size: 12px;\">{escape(url)}</p>"
            )
            text_lines += ["", url]
        html = _HTML_TEMPLATE.format(
            title=escape(title),
            paragraphs=html_paragraphs,
            action=action,
            sender=escape(self.from_name),
        )
        text = "\n".join(text_lines + ["", "--", self.from_name, ""])
        return html, text

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
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
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                error_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=self._redact_email(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        url = f"{self.base_url}/verify-email?token={token}"
        html, text = self._compose(
            "Confirm your email address",
            [
                "Welcome aboard. Confirm this address to finish setting up your shop account.",
                f"The link expires in {self.verification_ttl_hours} hours.",
            ],
            ("Confirm email", url),
        )
        return self._send_email(to_email, f"Confirm your {self.from_name} email", html, text)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        url = f"{self.base_url}/reset-password?token={token}"
        html, text = self._compose(
            "Reset your password",
            [
                "Someone asked to reset the password for this account.",
                f"The link expires in {self.reset_ttl_minutes} minutes. "
                "If it was not you, ignore this message and your password stays the same.",
            ],
            ("Choose a new password", url),
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html, text)

    def send_password_changed(self, to_email: str) -> bool:
        html, text = self._compose(
            "Your password was changed",
            [
                "The password for your account was just changed and every device was signed out.",
                "If you did not do this, reset your password right away and contact your administrator.",
            ],
        )
        return self._send_email(to_email, f"Your {self.from_name} password was changed", html, text)
