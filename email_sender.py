"""Outbound email.

Fire-and-forget: send() logs failures and returns False, it never raises.
Request handlers are synchronous, so each send runs its own event loop.
"""

import asyncio
import html
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import aiosmtplib


logger = logging.getLogger(__name__)


class SMTPProvider:
    def __init__(self, smtp_host: str, smtp_port: int, username: str, password: str, sender: str):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.sender = sender

    def _build_message(self, to: str, subject: str, html_body: str, text_body: Optional[str]):
        if text_body:
            message = MIMEMultipart("alternative")
            message.attach(MIMEText(text_body, "plain", "utf-8"))
            message.attach(MIMEText(html_body, "html", "utf-8"))
        else:
            message = MIMEText(html_body, "html", "utf-8")
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        return message

    async def send_email(self, to: str, subject: str, html_body: str, text_body: Optional[str] = None) -> bool:
        try:
            logger.info("Sending email via SMTP to %s: %s", to, subject)
            await aiosmtplib.send(
                self._build_message(to, subject, html_body, text_body),
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.username or None,
                password=self.password or None,
                start_tls=self.smtp_port == 587,
                timeout=30,
            )
            logger.info("Email sent to %s", to)
            return True
        except aiosmtplib.SMTPException as e:
            logger.error("SMTP error while sending email to %s: %s", to, e)
            return False
        except OSError as e:
            logger.error("Could not reach SMTP server %s:%s: %s", self.smtp_host, self.smtp_port, e)
            return False


class EmailSender:
    def __init__(self, provider: Optional[SMTPProvider], admin_address: str):
        self.provider = provider
        self.admin_address = admin_address

    @classmethod
    def from_config(cls, config) -> "EmailSender":
        provider = None
        if config.get("SMTP_HOST"):
            provider = SMTPProvider(
                config["SMTP_HOST"],
                int(config.get("SMTP_PORT") or 587),
                config.get("SMTP_USER") or "",
                config.get("SMTP_PASSWORD") or "",
                config.get("EMAIL_FROM") or "",
            )
        else:
            logger.warning("SMTP_HOST not set; outbound email disabled")
        return cls(provider, config.get("ADMIN_NOTIFICATION_EMAIL") or "")

    def send(self, to: str, subject: str, html_body: str) -> bool:
        if not to:
            logger.warning("Email %r has no recipient; skipped", subject)
            return False
        if self.provider is None:
            logger.info("Email disabled; would send %r to %s", subject, to)
            return False
        try:
            return asyncio.run(self.provider.send_email(to, subject, html_body))
        except RuntimeError as e:
            logger.error("Could not run email send for %s: %s", to, e)
            return False

    # ---- templates ----
    def send_verification_requested(self, user_name: str, user_email: str, activity_title: str) -> bool:
        body = (
            f"<p>User {html.escape(user_name or 'Unknown')} ({html.escape(user_email or '')}) "
            f"has requested verification for Task: {html.escape(activity_title or '')}.</p>"
        )
        return self.send(self.admin_address, "New Verification Request", body)

    def send_verification_ready(self, to: str, user_name: str, verification_url: str) -> bool:
        url = html.escape(verification_url, quote=True)
        body = (
            "<h2>Your Verification Task is Ready</h2>"
            f"<p>Hello {html.escape(user_name or 'User')},</p>"
            "<p>Your verification task has been approved. Click the link below to start:</p>"
            f'<a href="{url}" target="_blank">Start Verification</a>'
        )
        return self.send(to, "Verification Task Ready", body)
