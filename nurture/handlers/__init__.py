"""Node handlers and the kind -> handler dispatch table."""

from __future__ import annotations

from typing import Dict

from ..contracts import NodeKind
from .base import (
    AuditEvent,
    EngineServices,
    StepContext,
    StepHandler,
    StepOutcome,
    Transition,
)
from .condition import handle_condition
from .exit import handle_exit, handle_stop, handle_unsupported
from .send_email import handle_send_email
from .wait import handle_wait
from .webhook import handle_webhook


async def _unreachable_trigger(ctx: StepContext) -> StepOutcome:
    # The interpreter steps over trigger nodes itself.
    return StepOutcome(transition=Transition.ADVANCE, state=ctx.state)


GRAPH_HANDLERS: Dict[NodeKind, StepHandler] = {
    NodeKind.TRIGGER: _unreachable_trigger,
    NodeKind.SEND_EMAIL: handle_send_email,
    NodeKind.WAIT: handle_wait,
    NodeKind.CONDITION: handle_condition,
    NodeKind.WEBHOOK: handle_webhook,
    NodeKind.EXIT: handle_exit,
    NodeKind.UNSUPPORTED: handle_unsupported,
}

LEGACY_HANDLERS: Dict[str, StepHandler] = {
    "send_email": handle_send_email,
    "wait": handle_wait,
    "condition": handle_condition,
    "stop": handle_stop,
}

missing = set(NodeKind) - set(GRAPH_HANDLERS)
if missing:  # pragma: no cover - guards against adding a kind without a handler
    raise RuntimeError(f"No handler registered for node kinds: {sorted(k.value for k in missing)}")
del missing

__all__ = [
    "AuditEvent",
    "EngineServices",
    "GRAPH_HANDLERS",
    "LEGACY_HANDLERS",
    "StepContext",
    "StepHandler",
    "StepOutcome",
    "Transition",
]
