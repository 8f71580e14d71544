"""SMTP mail transport built on aiosmtplib."""

from __future__ import annotations

import logging
from email.message import EmailMessage
from email.utils import formataddr, formatdate

import aiosmtplib

from ..errors import MailDeliveryError
from ..persistence.models import SenderConfig
from .base import MailTransport, OutgoingEmail, SendReceipt

logger = logging.getLogger(__name__)


def uses_implicit_tls(sender: SenderConfig) -> bool:
    return (sender.security or "TLS").upper() == "SSL" and sender.smtp_port == 465


def build_mime(message: OutgoingEmail) -> EmailMessage:
    mime = EmailMessage()
    mime["From"] = formataddr((message.from_name, message.from_email))
    mime["To"] = message.to_email
    mime["Subject"] = message.subject
    mime["Message-ID"] = message.message_id
    mime["Date"] = formatdate(usegmt=True)
    for name, value in message.headers.items():
        if name in mime:
            del mime[name]
        mime[name] = value
    mime.set_content(message.text_body)
    mime.add_alternative(message.html_body, subtype="html")
    return mime


class SMTPMailTransport(MailTransport):
    """Deliver through the sender account's SMTP server."""

    def __init__(self, timeout: float = 60.0) -> None:
        self.timeout = timeout

    async def send(self, sender: SenderConfig, message: OutgoingEmail) -> SendReceipt:
        implicit_tls = uses_implicit_tls(sender)
        try:
            errors, response = await aiosmtplib.send(
                build_mime(message),
                hostname=sender.smtp_host,
                port=sender.smtp_port,
                username=sender.smtp_username or None,
                password=sender.smtp_password or None,
                use_tls=implicit_tls,
                start_tls=False if implicit_tls else None,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPException as e:
            raise MailDeliveryError(f"SMTP delivery failed: {e}") from e
        except OSError as e:
            raise MailDeliveryError(f"SMTP connection failed: {e}") from e
        if message.to_email in errors:
            code, reason = errors[message.to_email]
            raise MailDeliveryError(f"Recipient rejected ({code}): {reason}")
        logger.debug(f"Delivered {message.message_id} via {sender.smtp_host}: {response}")
        return SendReceipt(
            message_id=message.message_id,
            response=response,
            accepted=[message.to_email],
        )
