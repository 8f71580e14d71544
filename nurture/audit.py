"""Append-only automation event log."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .persistence.models import AuditEntry, Workflow
from .persistence.repository import AutomationRepository
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class AuditLog:
    """Records automation events for a workflow's owner."""

    def __init__(self, repository: AutomationRepository, clock: Clock = utcnow) -> None:
        self._repository = repository
        self._clock = clock

    async def record(
        self,
        workflow: Workflow,
        contact_id: Optional[str],
        event_type: str,
        step_index: Optional[int],
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Persist an audit log entry. Storage failures are logged, never raised."""
        entry = AuditEntry(
            workflow_id=workflow.id,
            contact_id=contact_id,
            user_id=workflow.user_id,
            event_type=event_type,
            step_index=step_index,
            message=message,
            metadata=metadata or {},
            created_at=self._clock(),
        )
        try:
            await self._repository.append_log(entry)
        except Exception as e:
            logger.error(f"Failed to insert automation log {event_type} for workflow {workflow.id}: {e}")
