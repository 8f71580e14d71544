"""Workflow-level run orchestration."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .contracts import ContactResult, RunSummary
from .errors import error_message
from .execute import ContactInterpreter
from .graph import normalize_graph
from .handlers import EngineServices
from .persistence.models import Workflow, WorkflowStatus
from .scheduler import ContactScheduler
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

RUNNABLE_STATUSES = (WorkflowStatus.LIVE, WorkflowStatus.PAUSED)


class WorkflowOrchestrator:
    """Runs workflows: enrollment, lease sweep, claiming and processing."""

    def __init__(self, services: EngineServices, clock: Clock = utcnow) -> None:
        self._services = services
        self._repository = services.repository
        self.audit = services.audit
        self.clock = clock
        self.scheduler = ContactScheduler(
            services.repository,
            clock=clock,
            stale_lease_minutes=services.settings.stale_lease_minutes,
        )
        self.interpreter = ContactInterpreter(services, clock=clock)

    @property
    def settings(self):
        return self._services.settings

    async def run_workflow(
        self,
        workflow: Workflow,
        force: bool = False,
        enroll: bool = False,
        batch_size: Optional[int] = None,
    ) -> RunSummary:
        """Run one workflow and persist its run summary.

        Draft and archived workflows are skipped unless ``force`` is set;
        a skipped run persists nothing.
        """
        summary = RunSummary(
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            status=workflow.status.value,
        )
        if not (force or workflow.status in RUNNABLE_STATUSES):
            summary.skipped = True
            logger.debug(f"Skipping workflow {workflow.id} with status {workflow.status.value}")
            return summary

        if enroll and workflow.trigger_type == "list_joined" and workflow.trigger_list_id:
            try:
                summary.enrolled = await self._repository.enroll_workflow_contacts(
                    workflow.id, self.settings.enroll_limit, self.clock()
                )
            except Exception as e:
                logger.error(f"Enrollment failed for workflow {workflow.id}: {e}")
                await self.audit.record(workflow, None, "enroll_failed", None, error_message(e))

        await self.scheduler.release_stale(workflow.id)
        graph = normalize_graph(workflow)
        claimed = await self.scheduler.claim_due(
            workflow.id, batch_size or self.settings.batch_size
        )
        for contact in claimed:
            try:
                result = await self.interpreter.process(workflow, contact, graph)
            except Exception:
                # The lease stays in place and is recovered by the stale sweep.
                logger.exception(f"Processing contact {contact.id} in workflow {workflow.id} failed")
                result = ContactResult(contact_id=contact.id, failed=True)
            summary.add(result)

        finished_at = self.clock()
        await self._repository.record_run(
            workflow.id,
            finished_at,
            {**summary.to_dict(), "finishedAt": finished_at.isoformat()},
        )
        logger.info(
            f"Workflow {workflow.id} run: processed={summary.processed} sent={summary.sent} "
            f"waiting={summary.waiting} completed={summary.completed} failed={summary.failed} "
            f"credit_blocked={summary.credit_blocked}"
        )
        return summary

    async def run_workflows(
        self,
        workflows: Iterable[Workflow],
        force: bool = False,
        batch_size: Optional[int] = None,
    ) -> List[RunSummary]:
        summaries = []
        for workflow in workflows:
            summaries.append(
                await self.run_workflow(workflow, force=force, enroll=True, batch_size=batch_size)
            )
        return summaries

    async def enroll_now(self, workflow: Workflow, limit: Optional[int] = None) -> int:
        """Enroll list members immediately and record a ``manual_enroll`` event."""
        enrolled = await self._repository.enroll_workflow_contacts(
            workflow.id, limit or self.settings.manual_enroll_limit, self.clock()
        )
        await self.audit.record(
            workflow,
            None,
            "manual_enroll",
            None,
            "Manual enrollment completed.",
            {"enrolled": enrolled},
        )
        logger.info(f"Manually enrolled {enrolled} contact(s) into workflow {workflow.id}")
        return enrolled
