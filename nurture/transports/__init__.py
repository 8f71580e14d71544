"""Mail transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import NurtureConfig, load_config
from .base import MailTransport, OutgoingEmail, SendReceipt
from .inmemory import InMemoryMailTransport
from .smtp import SMTPMailTransport


def get_mail_transport(
    backend: Optional[str] = None, config: Optional[NurtureConfig] = None
) -> MailTransport:
    """Factory function to get the configured mail transport."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("NURTURE_MAIL_BACKEND")
        or config.mail.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryMailTransport()
    elif backend == "smtp":
        return SMTPMailTransport(timeout=config.mail.timeout_seconds)
    else:
        raise ValueError(f"Unsupported mail backend: {backend}")


__all__ = [
    "InMemoryMailTransport",
    "MailTransport",
    "OutgoingEmail",
    "SMTPMailTransport",
    "SendReceipt",
    "get_mail_transport",
]
