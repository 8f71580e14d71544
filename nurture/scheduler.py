"""Select and claim due contacts."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import List

from . import constants
from .persistence.models import Contact
from .persistence.repository import AutomationRepository
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class ContactScheduler:
    """Hands out due contacts with compare-and-swap claiming.

    The store-level ``active -> processing`` swap is the only mutual
    exclusion between overlapping runs, in-process or across processes.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        clock: Clock = utcnow,
        stale_lease_minutes: float = constants.STALE_LEASE_MINUTES,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self.stale_lease_minutes = stale_lease_minutes

    async def release_stale(self, workflow_id: str) -> int:
        """Return abandoned ``processing`` leases to ``active``."""
        cutoff = self._clock() - timedelta(minutes=self.stale_lease_minutes)
        released = await self._repository.release_stale_contacts(workflow_id, cutoff)
        if released:
            logger.warning(f"Released {released} stale contact lease(s) in workflow {workflow_id}")
        return released

    async def claim_due(
        self, workflow_id: str, batch_size: int = constants.DUE_CONTACTS_BATCH
    ) -> List[Contact]:
        """Claim up to ``batch_size`` due contacts, earliest first."""
        now = self._clock()
        due = await self._repository.fetch_due_contacts(workflow_id, now, batch_size)
        claimed: List[Contact] = []
        for contact in due:
            won = await self._repository.claim_contact(contact.id, now)
            if won is None:
                logger.debug(f"Contact {contact.id} was claimed by another run")
                continue
            claimed.append(won)
        return claimed
