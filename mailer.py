"""Outbound email for password reset links (async SMTP via aiosmtplib)."""

import logging
from email.message import EmailMessage
from typing import Protocol

import aiosmtplib

from config import Settings
from errors import DeliveryError

logger = logging.getLogger(__name__)


class ResetDelivery(Protocol):
    async def send_reset_email(self, to: str, url: str) -> None:
        ...


class SmtpMailer:
    """Sends reset links over SMTP.

    Configuration comes from the MAIL_* settings. When MAIL_HOST is unset
    every send raises DeliveryError, which the reset flow logs and swallows.
    """

    def __init__(self, settings: Settings):
        self._settings = settings

    @property
    def configured(self) -> bool:
        return bool(self._settings.mail_host and self._settings.mail_from)

    def build_reset_message(self, to: str, url: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._settings.mail_from
        msg["To"] = to
        msg["Subject"] = "Reset your password"
        msg.set_content(
            f"Reset your password: {url}\n\n"
            "This link expires in 30 minutes. If you didn't request this, ignore this email."
        )
        msg.add_alternative(
            "<p>You requested a password reset.</p>"
            f'<p><a href="{url}">Click here to reset your password</a></p>'
            "<p>This link expires in 30 minutes. If you didn't request this, ignore this email.</p>",
            subtype="html",
        )
        return msg

    async def send_reset_email(self, to: str, url: str) -> None:
        if not self.configured:
            raise DeliveryError("SMTP is not configured")
        try:
            await aiosmtplib.send(
                self.build_reset_message(to, url),
                hostname=self._settings.mail_host,
                port=self._settings.mail_port,
                username=self._settings.mail_user,
                password=self._settings.mail_password,
                use_tls=self._settings.mail_use_tls,
                timeout=10,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP send failed: {e}") from e
        logger.info("Reset email handed to SMTP server %s", self._settings.mail_host)
