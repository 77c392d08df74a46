"""
auth/mailer.py -- Outbound mail over SMTP.

The core never decides anything based on mail delivery. The password-reset
route hands a freshly issued token to send_password_reset() in a background
task, after the uniform response has been produced.

When SMTP is not configured (no smtp_host) messages are logged instead of
sent, with the recipient redacted and the body omitted -- the body carries a
live reset token.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from urllib.parse import urlencode

from core.config import Settings

logger = logging.getLogger("tenantauth.auth.mailer")


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class MailSender:
    def __init__(self, settings: Settings) -> None:
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_use_tls = settings.smtp_use_tls
        self.from_email = settings.mail_from or settings.smtp_user
        self.from_name = settings.mail_from_name
        self.base_url = settings.app_base_url.rstrip("/")
        self.reset_expire_minutes = settings.password_reset_expire_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to: str, subject: str, html_body: str) -> None:
        """Send an HTML message. Raises smtplib.SMTPException on delivery failure."""
        if not self.is_configured:
            logger.info("SMTP not configured; not sending %r to %s", subject, redact_email(to))
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, [to], msg.as_string())
        else:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, [to], msg.as_string())
        logger.info("Mail sent to %s", redact_email(to))

    def reset_link(self, email: str, token: str, tenant_domain: str) -> str:
        query = urlencode({"token": token, "email": email, "tenant": tenant_domain})
        return f"{self.base_url}/reset-password?{query}"

    def send_password_reset(self, email: str, token: str, tenant_domain: str) -> None:
        """Background-task entry point. Delivery errors are logged, not raised.

        The HTTP response has already gone out; raising here would only
        produce a traceback in the worker.
        """
        link = escape(self.reset_link(email, token, tenant_domain), quote=True)
        body = f"""
            <html>
            <body style="font-family: Arial, sans-serif;">
                <h2>Password Reset Request</h2>
                <p>You requested a password reset for your account in tenant: <strong>{escape(tenant_domain)}</strong></p>
                <p><a href="{link}">Reset Password</a></p>
                <p>Or copy and paste this URL into your browser:</p>
                <p>{link}</p>
                <p>This link will expire in {self.reset_expire_minutes} minutes.</p>
                <p>If you didn't request this, please ignore this email.</p>
            </body>
            </html>
        """
        try:
            self.send(email, f"Password Reset Request - {self.from_name}", body)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send password reset mail to %s", redact_email(email))
