"""SMTP delivery.

``smtplib`` is blocking, so each send runs in a worker thread with the
socket timeout from settings.
"""

import asyncio
import logging
import smtplib
from email.message import EmailMessage

from checkout.config import Settings
from checkout.errors import TransportError
from checkout.services.dispatcher import Message


def build_email(message: Message, sender: str) -> EmailMessage:
    email = EmailMessage()
    email["From"] = sender
    email["To"] = message.to
    email["Subject"] = message.subject
    email.set_content(message.text)
    email.add_alternative(message.html, subtype="html")
    for attachment in message.attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        email.add_attachment(
            attachment.content,
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
        )
    return email


class SmtpTransport:
    def __init__(self, settings: Settings):
        self.settings = settings

    def _send_sync(self, email: EmailMessage) -> None:
        s = self.settings
        with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout) as smtp:
            if s.smtp_use_tls:
                smtp.starttls()
            if s.smtp_username:
                smtp.login(s.smtp_username, s.smtp_password or "")
            smtp.send_message(email)

    async def send(self, message: Message) -> None:
        email = build_email(message, self.settings.mail_from)
        try:
            await asyncio.to_thread(self._send_sync, email)
        except (smtplib.SMTPException, OSError) as exc:
            logging.warning("SMTP delivery to %s failed: %s", message.to, exc)
            raise TransportError(f"SMTP delivery failed: {exc}") from exc
