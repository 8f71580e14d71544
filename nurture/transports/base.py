"""Base interface for outbound mail delivery."""

from __future__ import annotations

import abc
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..persistence.models import SenderConfig


class OutgoingEmail(BaseModel):
    """A fully rendered message ready for delivery."""

    from_name: str
    from_email: str
    to_email: str
    subject: str
    html_body: str
    text_body: str
    message_id: str
    headers: Dict[str, str] = Field(default_factory=dict)


class SendReceipt(BaseModel):
    message_id: str
    response: Optional[str] = None
    accepted: List[str] = Field(default_factory=list)


class MailTransport(metaclass=abc.ABCMeta):
    """Abstract mail transport bound per call to a sender account."""

    @abc.abstractmethod
    async def send(self, sender: SenderConfig, message: OutgoingEmail) -> SendReceipt:
        """Deliver ``message`` through ``sender``'s account.

        Raises:
            MailDeliveryError: If the message was not accepted.
        """
        raise NotImplementedError
