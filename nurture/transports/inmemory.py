"""In-memory mail transport for testing."""

from __future__ import annotations

from typing import List, Optional, Tuple

from ..errors import MailDeliveryError
from ..persistence.models import SenderConfig
from .base import MailTransport, OutgoingEmail, SendReceipt


class InMemoryMailTransport(MailTransport):
    """Collects messages in an outbox instead of delivering them."""

    def __init__(self, fail_with: Optional[str] = None) -> None:
        self.outbox: List[Tuple[SenderConfig, OutgoingEmail]] = []
        self.fail_with = fail_with

    async def send(self, sender: SenderConfig, message: OutgoingEmail) -> SendReceipt:
        if self.fail_with:
            raise MailDeliveryError(self.fail_with)
        self.outbox.append((sender, message))
        return SendReceipt(
            message_id=message.message_id,
            response="250 queued in memory",
            accepted=[message.to_email],
        )
