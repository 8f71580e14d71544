"""Credit metering for outbound automation emails."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from . import constants
from .errors import CreditError, error_message
from .persistence.models import CreditResult
from .persistence.repository import AutomationRepository
from .utils.clock import epoch_millis

logger = logging.getLogger(__name__)

DEBIT_EVENT = "automation_email_send"
REFUND_EVENT = "automation_email_refund"


class CreditLedger:
    """Debit and refund credits through the store's atomic operations.

    Each debit is keyed by a reference id. Debiting twice with the same
    reference charges once, and a refund is honoured at most once per
    reference and only after a matching debit.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        cost_per_email: int = constants.CREDIT_COST_PER_EMAIL,
    ) -> None:
        self._repository = repository
        self.cost = cost_per_email

    @staticmethod
    def reference_for(
        workflow_id: str, contact_id: str, step_key: str, at: datetime
    ) -> str:
        return f"automation:{workflow_id}:{contact_id}:step:{step_key}:{epoch_millis(at)}"

    async def debit(
        self, user_id: str, reference_id: str, metadata: Optional[dict[str, Any]] = None
    ) -> CreditResult:
        try:
            return await self._repository.consume_user_credits(
                user_id, self.cost, DEBIT_EVENT, reference_id, metadata or {}
            )
        except Exception as e:
            raise CreditError(f"Credit consumption failed: {error_message(e)}") from e

    async def refund(
        self, user_id: str, reference_id: str, metadata: Optional[dict[str, Any]] = None
    ) -> Optional[int]:
        """Return the new balance, ``None`` when the refund could not be recorded."""
        try:
            return await self._repository.refund_user_credits(
                user_id, self.cost, REFUND_EVENT, reference_id, metadata or {}
            )
        except Exception as e:
            logger.error(f"Credit refund failed for {reference_id}: {e}")
            return None
