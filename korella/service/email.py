from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import urlencode

from korella.config import Settings
from korella.logging import get_logger, redact_email
from korella.storage.models import User

logger = get_logger(__name__)


class Mailer(Protocol):
    def send_verification_email(
        self, user: User, token: str, *, email: Optional[str] = None
    ) -> bool: ...

    def send_password_reset_email(self, user: User, token: str) -> bool: ...

    def send_password_changed_email(self, user: User) -> bool: ...


def _render_html(title: str, paragraphs: list[str], action: Optional[tuple[str, str]]) -> str:
    body = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    button = ""
    if action:
        label, url = action
        safe_url = html.escape(url, quote=True)
        button = (
            f'<p style="margin: 30px 0;"><a href="{safe_url}" '
            'style="background:#1d4ed8;color:#fff;padding:12px 24px;'
            f'border-radius:8px;text-decoration:none;">{html.escape(label)}</a></p>'
            f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
        )
    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
        '<body style="font-family:sans-serif;line-height:1.6;color:#1f2933;">'
        f'<div style="max-width:600px;margin:0 auto;padding:40px 20px;">'
        f"<h1>{html.escape(title)}</h1>{body}{button}"
        "<p style=\"margin-top:40px;font-size:12px;color:#5b6470;\">Korella CRM</p>"
        "</div></body></html>"
    )


def _render_text(title: str, paragraphs: list[str], action: Optional[tuple[str, str]]) -> str:
    lines = [title, ""]
    for paragraph in paragraphs:
        lines.extend([paragraph, ""])
    if action:
        lines.extend([action[1], ""])
    lines.extend(["---", "Korella CRM"])
    return "\n".join(lines)


class EmailService:
    """SMTP mailer for the account emails.

    When SMTP is not configured the message is logged instead of sent, which
    is the development default. Delivery failures are logged and reported as
    ``False``; they never raise into the auth flow.
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
        from_name: str = "Korella CRM",
        app_base_url: str = "http://localhost:3000",
        verification_ttl_hours: int = 24,
        reset_ttl_hours: int = 1,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.app_base_url = app_base_url.rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_hours = reset_ttl_hours

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
            app_base_url=settings.app_base_url,
            verification_ttl_hours=settings.email_verification_ttl_hours,
            reset_ttl_hours=settings.password_reset_ttl_hours,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
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
                to=redact_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redact_email(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def _send(
        self,
        to_email: str,
        subject: str,
        title: str,
        paragraphs: list[str],
        action: Optional[tuple[str, str]] = None,
    ) -> bool:
        return self._send_email(
            to_email,
            subject,
            _render_html(title, paragraphs, action),
            _render_text(title, paragraphs, action),
        )

    def send_verification_email(
        self, user: User, token: str, *, email: Optional[str] = None
    ) -> bool:
        url = f"{self.app_base_url}/verify-email?{urlencode({'token': token})}"
        hours = self.verification_ttl_hours
        return self._send(
            email or user.email,
            "Verify your Korella email",
            "Verify your email",
            [
                f"Hi {user.full_name or 'there'}, please confirm this email address.",
                f"This link will expire in {hours} hour{'s' if hours != 1 else ''}.",
            ],
            ("Verify Email", url),
        )

    def send_password_reset_email(self, user: User, token: str) -> bool:
        url = f"{self.app_base_url}/reset-password?{urlencode({'token': token})}"
        hours = self.reset_ttl_hours
        return self._send(
            user.email,
            "Reset your Korella password",
            "Reset your password",
            [
                "We received a request to reset your password.",
                f"This link will expire in {hours} hour{'s' if hours != 1 else ''}.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            ("Reset Password", url),
        )

    def send_password_changed_email(self, user: User) -> bool:
        return self._send(
            user.email,
            "Your Korella password was changed",
            "Password changed",
            [
                "The password on your account was just changed and other sessions were signed out.",
                "If you didn't make this change, reset your password and contact support.",
            ],
        )
