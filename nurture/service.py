"""Entrypoint handling ``tick``, ``run_now``, ``run_all`` and ``enroll_now``."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .audit import AuditLog
from .auth import Authenticator, Principal
from .config import NurtureConfig, load_config
from .contracts import RunnerRequest, RunnerResponse
from .credits import CreditLedger
from .dispatch import WorkflowOrchestrator
from .errors import BadRequest, NotFound
from .handlers import EngineServices
from .ingest import IngestResult, WebhookIngestor
from .persistence import get_repository
from .persistence.models import Workflow, WorkflowStatus
from .persistence.repository import AutomationRepository
from .transports import MailTransport, get_mail_transport
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class AutomationService:
    """Authorises a runner request and delegates to the orchestrator."""

    def __init__(
        self,
        repository: AutomationRepository,
        orchestrator: WorkflowOrchestrator,
        authenticator: Authenticator,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.authenticator = authenticator
        self.ingestor = WebhookIngestor(
            repository, orchestrator, orchestrator.audit, clock=orchestrator.clock
        )

    async def _owned_workflow(self, principal: Principal, workflow_id: Optional[str]) -> Workflow:
        if not workflow_id:
            raise BadRequest("workflowId is required")
        user_id = None if principal.service else principal.user_id
        workflow = await self.repository.get_workflow(workflow_id, user_id=user_id)
        if workflow is None or not principal.owns(workflow.user_id):
            raise NotFound("Workflow not found")
        return workflow

    async def handle(self, request: RunnerRequest, authorization: Optional[str]) -> RunnerResponse:
        """Run the requested action for the authenticated caller.

        Raises:
            Unauthorized: Missing or invalid credentials.
            BadRequest: ``run_now``/``enroll_now`` without a workflow id.
            NotFound: Unknown workflow or one owned by another user.
        """
        principal = self.authenticator.authenticate(authorization)
        return await self.execute(request, principal)

    async def execute(self, request: RunnerRequest, principal: Principal) -> RunnerResponse:
        """Run ``request`` on behalf of an already authenticated ``principal``."""
        settings = self.orchestrator.settings
        logger.info(
            f"Runner action {request.action} requested by "
            f"{'service' if principal.service else principal.user_id}"
        )

        if request.action == "enroll_now":
            workflow = await self._owned_workflow(principal, request.workflow_id)
            enrolled = await self.orchestrator.enroll_now(workflow, request.limit)
            return RunnerResponse(
                action=request.action,
                service=principal.service,
                workflow_id=workflow.id,
                enrolled=enrolled,
            )

        if request.action == "run_now":
            workflow = await self._owned_workflow(principal, request.workflow_id)
            summary = await self.orchestrator.run_workflow(
                workflow, force=True, enroll=True, batch_size=request.batch_size
            )
            return RunnerResponse.from_summaries(request.action, [summary], principal.service)

        force = request.action == "run_all"
        statuses = [WorkflowStatus.LIVE, WorkflowStatus.PAUSED] if force else [WorkflowStatus.LIVE]
        workflows = await self.repository.list_workflows(
            statuses=statuses,
            user_id=None if principal.service else principal.user_id,
            limit=request.max_workflows or settings.max_workflows,
        )
        summaries = await self.orchestrator.run_workflows(
            workflows, force=force, batch_size=request.batch_size
        )
        return RunnerResponse.from_summaries(request.action, summaries, principal.service)

    async def ingest(
        self, workflow_id: str, payload: Dict[str, Any], secret: Optional[str] = None
    ) -> IngestResult:
        """Accept an inbound trigger event; the shared secret is the only credential."""
        return await self.ingestor.ingest(workflow_id, payload, secret)


def build_services(
    config: NurtureConfig,
    http: httpx.AsyncClient,
    repository: Optional[AutomationRepository] = None,
    mail: Optional[MailTransport] = None,
    clock: Clock = utcnow,
) -> EngineServices:
    """Assemble the collaborators shared by every node handler."""
    repository = repository or get_repository(config=config)
    return EngineServices(
        repository=repository,
        ledger=CreditLedger(repository, cost_per_email=config.runner.credit_cost_per_email),
        mail=mail or get_mail_transport(config=config),
        http=http,
        audit=AuditLog(repository, clock=clock),
        settings=config.runner,
        mailer_name=config.mail.mailer_name,
    )


@asynccontextmanager
async def open_service(
    config: Optional[NurtureConfig] = None,
    repository: Optional[AutomationRepository] = None,
    mail: Optional[MailTransport] = None,
    clock: Clock = utcnow,
) -> AsyncIterator[AutomationService]:
    """Yield a ready :class:`AutomationService`; closes the HTTP client on exit."""
    config = config or load_config()
    async with httpx.AsyncClient() as http:
        services = build_services(config, http, repository=repository, mail=mail, clock=clock)
        yield AutomationService(
            services.repository,
            WorkflowOrchestrator(services, clock=clock),
            Authenticator(config.auth),
        )
