"""Per-contact workflow interpreter."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from .contracts import ContactResult, GraphNode, LegacyStep, NodeKind
from .graph import WorkflowGraph, normalize_flow
from .handlers import (
    GRAPH_HANDLERS,
    LEGACY_HANDLERS,
    AuditEvent,
    EngineServices,
    StepContext,
    StepOutcome,
    Transition,
)
from .persistence.models import (
    Contact,
    ContactState,
    ContactStatus,
    ContactUpdate,
    EmailMessage,
    Workflow,
)
from .utils.clock import Clock, utcnow
from .utils.retry import RetryKind

logger = logging.getLogger(__name__)

GUARD_MESSAGE = "Step recursion guard reached."
MISSING_NODE_MESSAGE = "Graph node no longer exists."


class ContactInterpreter:
    """Advance one claimed contact through its workflow.

    Each handler outcome is persisted with a single ``apply_transition``
    write, so a sent email and the pointer moving past it are stored
    together. Non-terminal outcomes hand the contact back to the scheduler
    instead of looping.
    """

    def __init__(self, services: EngineServices, clock: Clock = utcnow) -> None:
        self._services = services
        self._clock = clock

    @property
    def settings(self):
        return self._services.settings

    async def process(
        self, workflow: Workflow, contact: Contact, graph: Optional[WorkflowGraph]
    ) -> ContactResult:
        if graph is not None:
            return await self._process_graph(workflow, contact, graph)
        return await self._process_legacy(workflow, contact)

    # ------------------------------------------------------------------
    async def _persist(
        self, contact_id: str, update: ContactUpdate, message: Optional[EmailMessage] = None
    ) -> None:
        await self._services.repository.apply_transition(contact_id, update, message)

    async def _emit(
        self,
        workflow: Workflow,
        contact: Contact,
        step_index: int,
        events: List[AuditEvent],
    ) -> None:
        for event in events:
            await self._services.audit.record(
                workflow,
                contact.id,
                event.event_type,
                step_index,
                event.message,
                event.metadata,
            )

    async def _complete(
        self,
        workflow: Workflow,
        contact: Contact,
        step: int,
        state: ContactState,
        events: List[AuditEvent],
    ) -> ContactResult:
        now = self._clock()
        await self._persist(
            contact.id,
            ContactUpdate(
                status=ContactStatus.COMPLETED,
                current_step=step,
                next_run_at=None,
                processing_started_at=None,
                completed_at=now,
                last_error=None,
                state=state,
            ),
        )
        await self._emit(workflow, contact, step, events)
        logger.info(f"Contact {contact.id} completed workflow {workflow.id} at step {step}")
        return ContactResult(contact_id=contact.id, completed=True)

    async def _fail(
        self,
        workflow: Workflow,
        contact: Contact,
        step: int,
        state: ContactState,
        error: str,
        events: List[AuditEvent],
    ) -> ContactResult:
        await self._persist(
            contact.id,
            ContactUpdate(
                status=ContactStatus.FAILED,
                current_step=step,
                next_run_at=None,
                processing_started_at=None,
                last_error=error,
                state=state,
            ),
        )
        await self._emit(workflow, contact, step, events)
        logger.error(f"Contact {contact.id} failed in workflow {workflow.id}: {error}")
        return ContactResult(contact_id=contact.id, failed=True)

    async def _release(
        self,
        contact: Contact,
        step: int,
        state: ContactState,
        run_at: datetime,
        error: Optional[str],
    ) -> None:
        await self._persist(
            contact.id,
            ContactUpdate(
                status=ContactStatus.ACTIVE,
                current_step=step,
                next_run_at=run_at,
                processing_started_at=None,
                last_error=error,
                state=state,
            ),
        )

    async def _park(
        self,
        workflow: Workflow,
        contact: Contact,
        step: int,
        outcome: StepOutcome,
        state: ContactState,
    ) -> ContactResult:
        """Persist a WAIT or RETRY outcome and hand the contact back."""
        now = self._clock()
        run_at = outcome.run_at or now
        if outcome.transition is Transition.WAIT:
            await self._release(contact, step, state, run_at, None)
            await self._emit(workflow, contact, step, outcome.events)
            return ContactResult(contact_id=contact.id, waiting=True)

        await self._release(contact, step, state, run_at, outcome.error)
        await self._emit(workflow, contact, step, outcome.events)
        logger.warning(
            f"Contact {contact.id} in workflow {workflow.id} will retry at {run_at.isoformat()}: "
            f"{outcome.error}"
        )
        if outcome.credit_blocked:
            return ContactResult(contact_id=contact.id, credit_blocked=True)
        return ContactResult(contact_id=contact.id, failed=True)

    async def _guard_reached(
        self,
        workflow: Workflow,
        contact: Contact,
        step: int,
        state: ContactState,
        message: str = GUARD_MESSAGE,
    ) -> ContactResult:
        now = self._clock()
        run_at = self.settings.retry.next_attempt_at(RetryKind.GUARD, now)
        await self._release(contact, step, state, run_at, message)
        logger.warning(f"Contact {contact.id} in workflow {workflow.id}: {message}")
        return ContactResult(contact_id=contact.id, failed=True)

    def _context(
        self,
        workflow: Workflow,
        contact: Contact,
        state: ContactState,
        step: int,
        config: dict,
        step_key: str,
        wait_key: str,
        title: str,
        node: Optional[GraphNode] = None,
    ) -> StepContext:
        return StepContext(
            workflow=workflow,
            contact=contact,
            state=state,
            config=config,
            step_index=step,
            step_key=step_key,
            wait_key=wait_key,
            title=title,
            now=self._clock(),
            services=self._services,
            node=node,
        )

    # ------------------------------------------------------------------
    async def _process_graph(
        self, workflow: Workflow, contact: Contact, graph: WorkflowGraph
    ) -> ContactResult:
        step = contact.current_step
        state = contact.state.model_copy(deep=True)
        entry = graph.entry
        pointer = (state.current_node_id or "").strip()

        if not pointer:
            if entry is None:
                return await self._complete(
                    workflow,
                    contact,
                    step,
                    state.model_copy(update={"current_node_id": None}),
                    _completed("Workflow completed: trigger has no outbound path.", graph.trigger.id),
                )
            pointer = entry
        elif graph.node_by_id(pointer) is None:
            if entry is None:
                error = "Graph pointer is invalid and no trigger path exists."
                return await self._fail(
                    workflow,
                    contact,
                    step,
                    state,
                    error,
                    [AuditEvent(event_type="invalid_pointer", message=error, metadata={"node_id": pointer})],
                )
            logger.warning(
                f"Contact {contact.id} points at unknown node {pointer}; restarting from trigger"
            )
            pointer = entry
        state = state.model_copy(update={"current_node_id": pointer})

        for _ in range(self.settings.graph_step_limit):
            node = graph.node_by_id(pointer)
            if node is None:
                return await self._guard_reached(
                    workflow,
                    contact,
                    step,
                    state.model_copy(update={"current_node_id": None}),
                    MISSING_NODE_MESSAGE,
                )

            if node.kind is NodeKind.TRIGGER:
                target = graph.first_target(node.id)
                if target is None:
                    return await self._complete(
                        workflow,
                        contact,
                        step,
                        state.model_copy(update={"current_node_id": None}),
                        _completed("Workflow completed: trigger reached with no outbound path.", node.id),
                    )
                pointer = target
                state = state.model_copy(update={"current_node_id": pointer})
                continue

            ctx = self._context(
                workflow,
                contact,
                state,
                step,
                node.config,
                step_key=node.id,
                wait_key=node.id,
                title=node.title,
                node=node,
            )
            outcome = await GRAPH_HANDLERS[node.kind](ctx)
            here = outcome.state.model_copy(update={"current_node_id": node.id})

            if outcome.transition in (Transition.WAIT, Transition.RETRY):
                return await self._park(workflow, contact, step, outcome, here)

            if outcome.transition is Transition.FAIL:
                return await self._fail(
                    workflow, contact, step, here, outcome.error or "Step failed.", outcome.events
                )

            # Terminal nodes count as an executed step.
            next_step = step + 1
            if outcome.transition is Transition.COMPLETE:
                return await self._complete(
                    workflow,
                    contact,
                    next_step,
                    outcome.state.model_copy(update={"current_node_id": None}),
                    outcome.events,
                )

            if outcome.branch is not None and node.kind is NodeKind.CONDITION:
                edge = graph.select_edge(node.id, outcome.branch)
                target = edge.target if edge else None
            else:
                target = graph.first_target(node.id)

            if outcome.transition is Transition.YIELD:
                return await self._yield_after_send(
                    workflow, contact, step, next_step, node, outcome, target
                )

            # ADVANCE
            await self._emit(workflow, contact, step, outcome.events)
            if target is None:
                return await self._complete(
                    workflow,
                    contact,
                    next_step,
                    outcome.state.model_copy(update={"current_node_id": None}),
                    _completed(f"Workflow completed after {node.kind.value} node.", node.id),
                )
            step = next_step
            pointer = target
            state = outcome.state.model_copy(update={"current_node_id": pointer})
            await self._persist(
                contact.id,
                ContactUpdate(current_step=step, last_error=None, state=state),
            )

        return await self._guard_reached(workflow, contact, step, state)

    async def _yield_after_send(
        self,
        workflow: Workflow,
        contact: Contact,
        step: int,
        next_step: int,
        node: GraphNode,
        outcome: StepOutcome,
        target: Optional[str],
    ) -> ContactResult:
        now = self._clock()
        state = outcome.state.model_copy(update={"current_node_id": target})
        if target is None:
            update = ContactUpdate(
                status=ContactStatus.COMPLETED,
                current_step=next_step,
                next_run_at=None,
                processing_started_at=None,
                completed_at=now,
                last_error=None,
                state=state,
            )
        else:
            update = ContactUpdate(
                status=ContactStatus.ACTIVE,
                current_step=next_step,
                next_run_at=now,
                processing_started_at=None,
                last_error=None,
                state=state,
            )
        await self._persist(contact.id, update, outcome.message)
        await self._emit(workflow, contact, step, outcome.events)
        if target is None:
            await self._emit(
                workflow,
                contact,
                next_step,
                _completed("Workflow completed after final email step.", node.id),
            )
            logger.info(f"Contact {contact.id} completed workflow {workflow.id} after final email")
            return ContactResult(contact_id=contact.id, sent=1, completed=True)
        return ContactResult(contact_id=contact.id, sent=1)

    # ------------------------------------------------------------------
    async def _process_legacy(self, workflow: Workflow, contact: Contact) -> ContactResult:
        flow: List[LegacyStep] = normalize_flow(workflow.flow)
        index = contact.current_step
        state = contact.state.model_copy(deep=True)

        for _ in range(self.settings.legacy_step_limit):
            if index >= len(flow):
                return await self._complete(
                    workflow, contact, index, state, _completed("Workflow completed automatically.")
                )
            step = flow[index]
            ctx = self._context(
                workflow,
                contact,
                state,
                index,
                step.config,
                step_key=step.id,
                wait_key=f"step_{index}",
                title=step.name,
            )
            outcome = await LEGACY_HANDLERS[step.type](ctx)

            if outcome.transition in (Transition.WAIT, Transition.RETRY):
                return await self._park(workflow, contact, index, outcome, outcome.state)

            if outcome.transition is Transition.FAIL:
                return await self._fail(
                    workflow, contact, index, outcome.state, outcome.error or "Step failed.", outcome.events
                )

            if outcome.transition is Transition.COMPLETE:
                return await self._complete(workflow, contact, index, outcome.state, outcome.events)

            if outcome.transition is Transition.YIELD:
                now = self._clock()
                await self._persist(
                    contact.id,
                    ContactUpdate(
                        status=ContactStatus.ACTIVE,
                        current_step=index + 1,
                        next_run_at=now,
                        processing_started_at=None,
                        last_error=None,
                        state=outcome.state,
                    ),
                    outcome.message,
                )
                await self._emit(workflow, contact, index, outcome.events)
                return ContactResult(contact_id=contact.id, sent=1)

            # ADVANCE
            await self._emit(workflow, contact, index, outcome.events)
            index += 1
            state = outcome.state
            await self._persist(
                contact.id,
                ContactUpdate(current_step=index, last_error=None, state=state),
            )

        return await self._guard_reached(workflow, contact, index, state)


def _completed(message: str, node_id: Optional[str] = None) -> List[AuditEvent]:
    metadata = {"node_id": node_id} if node_id else {}
    return [AuditEvent(event_type="workflow_completed", message=message, metadata=metadata)]
