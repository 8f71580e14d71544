"""Retry windows for transient step failures."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from .. import constants
from .clock import add_minutes


class RetryKind(str, Enum):
    SEND = "send"
    CONDITION = "condition"
    CREDIT = "credit"
    WEBHOOK = "webhook"
    GUARD = "guard"


class RetryPolicy(BaseModel):
    """Minutes to wait before a contact is picked up again, per failure kind."""

    send_minutes: float = constants.SEND_RETRY_MINUTES
    condition_minutes: float = constants.CONDITION_RETRY_MINUTES
    credit_minutes: float = constants.CREDIT_RETRY_MINUTES
    webhook_minutes: float = constants.WEBHOOK_RETRY_MINUTES
    guard_minutes: float = constants.GUARD_RETRY_MINUTES

    def delay_minutes(self, kind: RetryKind) -> float:
        return {
            RetryKind.SEND: self.send_minutes,
            RetryKind.CONDITION: self.condition_minutes,
            RetryKind.CREDIT: self.credit_minutes,
            RetryKind.WEBHOOK: self.webhook_minutes,
            RetryKind.GUARD: self.guard_minutes,
        }[kind]

    def next_attempt_at(self, kind: RetryKind, now: datetime) -> datetime:
        """Compute when a contact failing with ``kind`` becomes due again."""
        return add_minutes(now, self.delay_minutes(kind))
