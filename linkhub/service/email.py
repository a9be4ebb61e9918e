from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Mapping, Optional

from linkhub.logging import get_logger

logger = get_logger(__name__)

_HTML_SHELL = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{brand}</p>
        </div>
    </div>
</body>
</html>
"""

# template name -> (subject, title, text paragraphs); paragraphs use str.format params
_TEMPLATES = {
    "two_factor_code": (
        "Your {brand} verification code",
        "Your verification code",
        (
            "Use this code to finish signing in:",
            "{code}",
            "The code expires in {ttl_minutes} minutes.",
            "If you didn't try to sign in, change your password.",
        ),
    ),
    "password_changed": (
        "Your {brand} password was changed",
        "Password changed",
        (
            "The password on your {brand} account was just changed and all other sessions were signed out.",
            "If you didn't make this change, please contact support immediately.",
        ),
    ),
    "email_changed": (
        "Your {brand} email address was changed",
        "Email address changed",
        (
            "The sign-in email on your {brand} account was changed to {new_email}.",
            "If you didn't make this change, please contact support immediately.",
        ),
    ),
    "two_factor_disabled": (
        "Two-factor authentication disabled",
        "Two-factor authentication disabled",
        (
            "Two-factor authentication has been turned off on your {brand} account.",
            "If you didn't make this change, please contact support immediately.",
        ),
    ),
}


class EmailService:
    """Email service for sending transactional emails.

    Supports:
    - SMTP with TLS/SSL
    - Two-factor login codes
    - Account security notices
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "LinkHub",
        code_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.code_ttl_minutes = code_ttl_minutes

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
            # Dev mode: the body may hold a login code, so only the subject is logged
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
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                refused_count=len(e.recipients),
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
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_templated_email(
        self, to_email: str, template: str, params: Optional[Mapping[str, object]] = None
    ) -> bool:
        """Render one of the built-in templates and send it.

        Unknown template names are a programming error and raise KeyError.
        """
        subject_tpl, title, paragraphs = _TEMPLATES[template]
        values = {"brand": self.from_name, "ttl_minutes": self.code_ttl_minutes}
        values.update(params or {})
        subject = subject_tpl.format(**values)
        text_lines = [p.format(**values) for p in paragraphs]
        escaped = {k: html.escape(str(v)) for k, v in values.items()}
        html_lines = []
        for paragraph in paragraphs:
            css = ' class="code"' if paragraph == "{code}" else ""
            html_lines.append(f"<p{css}>{paragraph.format(**escaped)}</p>")
        html_body = _HTML_SHELL.format(
            title=html.escape(title), body="\n        ".join(html_lines), brand=escaped["brand"]
        )
        text_body = "\n\n".join([title, *text_lines, "---", self.from_name]) + "\n"
        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_email(self, to_email: str, code: str) -> bool:
        """Send a one-time login or enrollment code."""
        return self.send_templated_email(to_email, "two_factor_code", {"code": code})
