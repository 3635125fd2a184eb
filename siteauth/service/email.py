from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from siteauth.logging import get_logger, redact_email
from siteauth.service.errors import EmailDeliveryError

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { display: inline-block; font-size: 28px; letter-spacing: 6px; font-weight: 700; background: #f3f4f6; padding: 12px 24px; border-radius: 8px; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """Transactional mail for the account flows.

    Sends over SMTP with STARTTLS or implicit TLS. When no relay is configured
    the message is logged instead and counted as delivered, which keeps local
    development and tests free of a mail server. With ``raise_on_failure`` a
    relay error raises :class:`EmailDeliveryError`; otherwise it returns False.
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
        from_name: str = "SiteAuth",
        base_url: Optional[str] = None,
        otp_ttl_minutes: int = 10,
        raise_on_failure: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"
        self.otp_ttl_minutes = otp_ttl_minutes
        self.raise_on_failure = raise_on_failure

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            otp_ttl_minutes=settings.otp_ttl_minutes,
            raise_on_failure=settings.email_raise_on_failure,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _deliver(self, msg: MIMEMultipart, to_email: str) -> None:
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

    def _fail(self, event: str, to_email: str, exc: Exception, **context) -> bool:
        logger.error(
            event,
            to=redact_email(to_email),
            host=self.smtp_host,
            error_type=type(exc).__name__,
            error=str(exc),
            **context,
        )
        if self.raise_on_failure:
            raise EmailDeliveryError("email delivery failed") from exc
        return False

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send one message; True when handed to the relay (or logged in dev mode)."""
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
        msg.attach(MIMEText(html_body, "html"))

        try:
            self._deliver(msg, to_email)
        except smtplib.SMTPAuthenticationError as e:
            return self._fail("email_auth_failed", to_email, e, smtp_code=e.smtp_code)
        except smtplib.SMTPRecipientsRefused as e:
            return self._fail("email_recipient_refused", to_email, e)
        except smtplib.SMTPException as e:
            return self._fail("email_smtp_error", to_email, e)
        except ssl.SSLError as e:
            return self._fail("email_ssl_error", to_email, e, port=self.smtp_port)
        except OSError as e:
            return self._fail("email_connect_failed", to_email, e, port=self.smtp_port)

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def _render(self, heading: str, paragraphs: List[str], highlight: Optional[str] = None):
        """Build matching HTML and plain-text bodies."""
        html_parts = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        if highlight:
            html_parts.insert(
                1, f'<p style="margin: 30px 0;"><span class="code">{html.escape(highlight)}</span></p>'
            )
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}    </style>
</head>
<body>
    <div class="container">
        <h1>{html.escape(heading)}</h1>
        {"".join(html_parts)}
        <div class="footer">
            <p>{html.escape(self.from_name)}</p>
        </div>
    </div>
</body>
</html>
"""
        text_parts = list(paragraphs)
        if highlight:
            text_parts.insert(1, highlight)
        text_body = heading + "\n\n" + "\n\n".join(text_parts) + f"\n\n---\n{self.from_name}\n"
        return html_body, text_body

    def send_verification_email(self, to_email: str, otp: str) -> bool:
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Use the code below to verify your email address:",
                f"The code expires in {self.otp_ttl_minutes} minutes.",
                "If you did not create an account, you can ignore this email.",
            ],
            highlight=otp,
        )
        return self._send_email(to_email, "Your verification code", html_body, text_body)

    def send_reset_password_email(self, to_email: str, otp: str) -> bool:
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Enter this code to continue:",
                f"The code expires in {self.otp_ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            highlight=otp,
        )
        return self._send_email(to_email, "Your password reset code", html_body, text_body)

    def send_welcome_email(self, to_email: str, temp_password: str) -> bool:
        html_body, text_body = self._render(
            "Welcome aboard",
            [
                "An administrator account has been created for you. Your temporary password is:",
                f"Sign in at {self.base_url} and choose a new password right away.",
            ],
            highlight=temp_password,
        )
        return self._send_email(to_email, "Your new account", html_body, text_body)

    def send_supervisor_invite_email(
        self, to_email: str, manager_name: str, temp_password: str
    ) -> bool:
        html_body, text_body = self._render(
            "You have been invited",
            [
                f"{manager_name} added you as a project supervisor. Your temporary password is:",
                f"Sign in at {self.base_url} with this email and set your own password.",
            ],
            highlight=temp_password,
        )
        return self._send_email(
            to_email, f"{manager_name} invited you to join their team", html_body, text_body
        )
