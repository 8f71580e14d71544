"""Inbound trigger webhook: enroll or restart a contact from an external event."""

from __future__ import annotations

import hmac
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from . import constants
from .audit import AuditLog
from .dispatch import WorkflowOrchestrator
from .errors import BadRequest, Conflict, NotFound, Unauthorized
from .persistence.models import Contact, ContactState, ContactStatus, Workflow, WorkflowStatus
from .persistence.repository import AutomationRepository
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class IngestResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    workflow_id: str = Field(serialization_alias="workflowId")
    contact_id: Optional[str] = Field(default=None, serialization_alias="contactId")
    email: Optional[str] = None
    event: Optional[str] = None
    ignored: bool = False
    reason: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None


def _as_dict(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _pick(*values: Any) -> str:
    for value in values:
        text = str(value or "").strip()
        if text:
            return text
    return ""


def _event_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item or "").strip()]
    return []


def merge_event_name(events: List[str], event_name: str) -> List[str]:
    """Append ``event_name`` to ``events``, dropping case-insensitive duplicates."""
    merged: List[str] = []
    seen: set[str] = set()
    for item in [*events, event_name]:
        text = str(item or "").strip()
        if text and text.lower() not in seen:
            seen.add(text.lower())
            merged.append(text)
    return merged


class WebhookIngestor:
    """Accepts external events for workflows not triggered by list joins."""

    def __init__(
        self,
        repository: AutomationRepository,
        orchestrator: WorkflowOrchestrator,
        audit: AuditLog,
        clock: Clock = utcnow,
        batch_size: int = constants.INGEST_BATCH_SIZE,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.audit = audit
        self.clock = clock
        self.batch_size = batch_size

    def _check_secret(self, workflow: Workflow, payload: Dict[str, Any], secret: Optional[str]) -> None:
        expected = _pick(
            workflow.trigger_filters.get("webhook_secret"),
            _as_dict(workflow.settings.get("webhook")).get("secret"),
        )
        if not expected:
            return
        provided = _pick(secret, payload.get("secret"))
        if not hmac.compare_digest(provided.encode(), expected.encode()):
            raise Unauthorized("Invalid webhook secret")

    async def ingest(
        self, workflow_id: str, payload: Dict[str, Any], secret: Optional[str] = None
    ) -> IngestResult:
        """Upsert the contact named by ``payload`` and run the workflow.

        Raises:
            NotFound: Unknown workflow.
            Conflict: Archived workflow or a ``list_joined`` trigger.
            Unauthorized: Shared secret mismatch.
            BadRequest: Missing or invalid contact email.
        """
        if not workflow_id:
            raise BadRequest("workflowId is required")
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise NotFound("Workflow not found")
        if workflow.status is WorkflowStatus.ARCHIVED:
            raise Conflict("Workflow is archived")
        if workflow.trigger_type.lower() == "list_joined":
            raise Conflict(
                "Workflow trigger type is list_joined. Switch to webhook/custom event trigger first."
            )

        payload = _as_dict(payload)
        self._check_secret(workflow, payload, secret)

        data = _as_dict(payload.get("data"))
        contact_map = _as_dict(payload.get("contact"))
        event_name = _pick(
            payload.get("event"),
            payload.get("event_name"),
            payload.get("eventName"),
            data.get("event"),
            contact_map.get("event"),
        )
        expected_event = _pick(workflow.trigger_filters.get("event_name")).lower()
        if expected_event and expected_event != event_name.lower():
            await self.audit.record(
                workflow,
                None,
                "webhook_event_ignored",
                None,
                f'Ignored webhook event "{event_name or "unknown"}" (expected "{expected_event}").',
                {"expected_event": expected_event, "received_event": event_name or None},
            )
            logger.info(f"Ignored event {event_name!r} for workflow {workflow.id}")
            return IngestResult(
                workflow_id=workflow.id, ignored=True, reason="event_mismatch", event=event_name or None
            )

        email = _pick(
            payload.get("email"),
            payload.get("email_address"),
            contact_map.get("email"),
            contact_map.get("email_address"),
        ).lower()
        if not email or not _EMAIL.match(email):
            raise BadRequest("Valid contact email is required")
        full_name = _pick(
            payload.get("full_name"),
            payload.get("name"),
            contact_map.get("full_name"),
            contact_map.get("name"),
        )

        now = self.clock()
        incoming: Dict[str, Any] = {
            **_as_dict(payload.get("state")),
            **data,
            **contact_map,
            "email": email,
            "webhook_last_payload_at": now.isoformat(),
            "webhook_last_event": event_name or None,
        }
        if full_name:
            incoming["full_name"] = full_name
        incoming_events = _event_list(incoming.pop("custom_events", None)) + _event_list(
            incoming.pop("customEvents", None)
        )

        existing = await self.repository.find_contact(workflow.id, email)
        if existing is None:
            state = ContactState().merged(incoming)
            contact = Contact(
                workflow_id=workflow.id,
                user_id=workflow.user_id,
                email=email,
                full_name=full_name or None,
                next_run_at=now,
                state=state.model_copy(
                    update={"custom_events": merge_event_name(incoming_events, event_name)}
                ),
            )
            contact = await self.repository.create_contact(contact)
        else:
            state = existing.state.merged(incoming)
            restart = existing.status.is_terminal
            update: Dict[str, Any] = {
                "custom_events": merge_event_name(
                    existing.state.custom_events + incoming_events, event_name
                )
            }
            if restart:
                update["current_node_id"] = None
            fields: Dict[str, Any] = {
                "full_name": full_name or existing.full_name,
                "state": state.model_copy(update=update),
            }
            # A claimed contact keeps its lease; the worker holding it schedules the next run.
            if existing.status is not ContactStatus.PROCESSING:
                fields.update(
                    status=ContactStatus.ACTIVE,
                    current_step=0 if restart else existing.current_step,
                    next_run_at=now,
                    processing_started_at=None,
                    completed_at=None,
                    last_error=None,
                )
            contact = existing.model_copy(update=fields)
            contact = await self.repository.save_contact(contact)
            if restart:
                logger.info(f"Restarted contact {contact.id} in workflow {workflow.id}")

        await self.audit.record(
            workflow,
            contact.id,
            "webhook_received",
            None,
            f"Webhook received for {email}.",
            {"event": event_name or None, "source": "automation-webhook"},
        )

        summary = await self.orchestrator.run_workflow(
            workflow, force=True, enroll=True, batch_size=self.batch_size
        )
        return IngestResult(
            workflow_id=workflow.id,
            contact_id=contact.id,
            email=email,
            event=event_name or None,
            summary=summary.to_dict(),
        )
