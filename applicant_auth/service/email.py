from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import quote

from applicant_auth.logging import get_logger

logger = get_logger(__name__)


class Mailer(Protocol):
    """Outbound mail contract used by the auth flows.

    Every method returns True when the message was handed off, False on failure.
    """

    def send_activation(self, to_email: str, token: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str) -> bool: ...

    def send_otp(self, to_email: str, code: str) -> bool: ...

    def send_email_change_notice(self, to_email: str, new_email: str) -> bool: ...


_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer"><p>{sender}</p>{footer}</div>
    </div>
</body>
</html>
"""


class EmailService:
    """SMTP mailer for account activation, password reset, OTP and notices.

    When SMTP is not configured the message is logged instead of sent and the
    call reports success, which keeps local development and tests mail-free.
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
        from_name: str = "Job Applicant",
        base_url: Optional[str] = None,
        activation_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
        otp_ttl_minutes: int = 5,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.activation_ttl_hours = activation_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes
        self.otp_ttl_minutes = otp_ttl_minutes

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        title: str,
        paragraphs: list[str],
        *,
        action_label: Optional[str] = None,
        action_url: Optional[str] = None,
    ) -> tuple[str, str]:
        body_parts = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        footer = ""
        text_lines = [title, ""]
        text_lines.extend(paragraphs)
        if action_url:
            safe_url = html.escape(action_url, quote=True)
            body_parts.insert(
                1,
                f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">'
                f"{html.escape(action_label or 'Open')}</a></p>",
            )
            footer = f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
            text_lines[2:2] = [action_url, ""]
        text_lines.extend(["", "---", self.from_name])
        html_body = _LAYOUT.format(
            title=html.escape(title),
            body="\n        ".join(body_parts),
            sender=html.escape(self.from_name),
            footer=footer,
        )
        return html_body, "\n".join(text_lines)

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
            # Dev mode: log the email instead of sending
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
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_activation(self, to_email: str, token: str) -> bool:
        """Send the account activation link."""
        activate_url = f"{self.base_url}/activate?token={quote(token)}"
        html_body, text_body = self._render(
            "Activate your account",
            [
                "Thanks for signing up! Activate your account to start applying for jobs.",
                f"This link will expire in {self.activation_ttl_hours} hours.",
            ],
            action_label="Activate Account",
            action_url=activate_url,
        )
        return self._send_email(to_email, "Activate your account", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        """Send password reset email with reset link."""
        reset_url = f"{self.base_url}/reset-password?token={quote(token)}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password.",
                f"This link will expire in {self.reset_ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action_label="Reset Password",
            action_url=reset_url,
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_otp(self, to_email: str, code: str) -> bool:
        """Send a one-time verification code."""
        html_body, text_body = self._render(
            "Your verification code",
            [
                f"Your verification code is {code}.",
                f"It expires in {self.otp_ttl_minutes} minutes.",
            ],
        )
        return self._send_email(to_email, "Your verification code", html_body, text_body)

    def send_email_change_notice(self, to_email: str, new_email: str) -> bool:
        """Tell the previous address that the account email was changed."""
        html_body, text_body = self._render(
            "Your email address was changed",
            [
                f"The email address on your account was changed to {self._redact_email(new_email)}.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        return self._send_email(
            to_email, "Your email address was changed", html_body, text_body
        )
