"""Terminal steps."""

from __future__ import annotations

from .base import AuditEvent, StepContext, StepOutcome, Transition


async def handle_exit(ctx: StepContext) -> StepOutcome:
    return StepOutcome(
        transition=Transition.COMPLETE,
        state=ctx.state,
        events=[
            AuditEvent(
                event_type="workflow_completed",
                message="Workflow completed.",
                metadata={"node_id": ctx.step_key},
            )
        ],
    )


async def handle_stop(ctx: StepContext) -> StepOutcome:
    """Legacy ``stop`` step."""
    return StepOutcome(
        transition=Transition.COMPLETE,
        state=ctx.state,
        events=[AuditEvent(event_type="workflow_stopped", message="Reached stop step.")],
    )


async def handle_unsupported(ctx: StepContext) -> StepOutcome:
    raw_kind = ctx.node.raw_kind if ctx.node is not None else ""
    return StepOutcome(
        transition=Transition.FAIL,
        state=ctx.state,
        error=f"Unsupported node type: {raw_kind or 'unknown'}",
        events=[
            AuditEvent(
                event_type="unsupported_node",
                message=f'Node type "{raw_kind}" is not supported by the runner.',
                metadata={"node_id": ctx.step_key},
            )
        ],
    )
