from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from tenantguard.logging import get_logger
from tenantguard.service.errors import DeliveryError

logger = get_logger(__name__)

DELIVERY_FAILED_MESSAGE = "There was an error sending the email. Try again later."

_HTML_SHELL = """
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
{content}
        <div class="footer">
            <p>{product}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    Supports STARTTLS and implicit TLS. When SMTP is not configured the
    message is logged instead of sent (development mode). Delivery failures
    are logged and raised as ``DeliveryError``.
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
        from_name: str = "TenantGuard",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render_html(self, content: str) -> str:
        return _HTML_SHELL.format(content=content, product=self.from_name)

    def send(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> None:
        """Send an email via SMTP, raising ``DeliveryError`` on failure."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=recipient,
                subject=subject,
                body_preview=text_body[:200],
            )
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            recipient=recipient,
        )
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
                recipient=recipient,
                host=self.smtp_host,
                error=str(exc),
                smtp_code=getattr(exc, "smtp_code", None),
            )
            raise DeliveryError(DELIVERY_FAILED_MESSAGE) from exc
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", recipient=recipient, error=str(exc))
            raise DeliveryError(DELIVERY_FAILED_MESSAGE) from exc
        except smtplib.SMTPSenderRefused as exc:
            logger.error(
                "email_sender_refused",
                recipient=recipient,
                sender=self.from_email,
                error=str(exc),
            )
            raise DeliveryError(DELIVERY_FAILED_MESSAGE) from exc
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError(DELIVERY_FAILED_MESSAGE) from exc
        except ssl.SSLError as exc:
            logger.error(
                "email_ssl_error",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            raise DeliveryError(DELIVERY_FAILED_MESSAGE) from exc
        except TimeoutError as exc:
            logger.error(
                "email_timeout",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            raise DeliveryError(DELIVERY_FAILED_MESSAGE) from exc
        except OSError as exc:
            logger.error(
                "email_connect_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            raise DeliveryError(DELIVERY_FAILED_MESSAGE) from exc

        logger.info("email_sent", recipient=recipient, subject=subject)

    def send_password_reset(self, to_email: str, token: str) -> None:
        reset_url = f"{self.base_url}/v1/auth/reset-password/{token}"
        subject = f"Your {self.from_name} password reset token"
        text_body = (
            "Forgot your password? Submit a PATCH request with your new password "
            f"and confirm_password to:\n\n{reset_url}\n\n"
            f"This link is valid for {self.reset_ttl_minutes} minutes.\n\n"
            "If you didn't forget your password, please ignore this email.\n"
        )
        html_body = self._render_html(
            f"""        <h1>Reset your password</h1>
        <p>Submit your new password to the link below:</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>
        <p>This link is valid for {self.reset_ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>"""
        )
        self.send(to_email, subject, text_body, html_body)

    def send_welcome(self, to_email: str, name: str) -> None:
        login_url = f"{self.base_url}/login"
        subject = "Welcome & Security Setup Required"
        text_body = (
            f"Hi {name},\n\n"
            "Your account has been created successfully.\n\n"
            "For your security, set up multi-factor authentication after your first login.\n\n"
            f"Login here: {login_url}\n"
            f"Registered email: {to_email}\n"
        )
        html_body = self._render_html(
            f"""        <h1>Welcome, {name}</h1>
        <p>Your account has been created successfully.</p>
        <p>For your security, set up multi-factor authentication after your first login.</p>
        <p style="margin: 30px 0;"><a href="{login_url}" class="button">Sign in</a></p>"""
        )
        self.send(to_email, subject, text_body, html_body)
