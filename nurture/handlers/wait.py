"""Delay a contact for a configured duration."""

from __future__ import annotations

import logging
from typing import Any, Dict

from ..utils.clock import add_minutes, parse_timestamp
from .base import AuditEvent, StepContext, StepOutcome, Transition

logger = logging.getLogger(__name__)

_UNIT_MINUTES = {"minutes": 1, "hours": 60, "days": 24 * 60}


def wait_minutes(config: Dict[str, Any], default: float) -> float:
    """Duration in minutes; invalid or non-positive values fall back to ``default``."""
    raw = config.get("duration", config.get("value", default))
    try:
        duration = float(raw)
    except (TypeError, ValueError):
        duration = default
    if duration != duration or duration <= 0 or duration == float("inf"):
        duration = default
    unit = str(config.get("unit") or "minutes").lower()
    return duration * _UNIT_MINUTES.get(unit, 1)


async def handle_wait(ctx: StepContext) -> StepOutcome:
    minutes = wait_minutes(ctx.config, ctx.services.settings.wait_default_minutes)
    markers = dict(ctx.state.wait_until)
    stored = markers.get(ctx.wait_key)

    if not stored:
        resume_at = add_minutes(ctx.now, minutes)
        markers[ctx.wait_key] = resume_at.isoformat()
        return StepOutcome(
            transition=Transition.WAIT,
            state=ctx.state.model_copy(update={"wait_until": markers}),
            run_at=resume_at,
            events=[
                AuditEvent(
                    event_type="wait_scheduled",
                    message=f"Waiting for {minutes:g} minute(s).",
                    metadata={"wait_until": resume_at.isoformat(), "node_id": ctx.step_key},
                )
            ],
        )

    resume_at = parse_timestamp(stored)
    if resume_at is None:
        logger.warning(
            f"Contact {ctx.contact.id} has an unreadable wait marker {stored!r}; restarting wait"
        )
        resume_at = add_minutes(ctx.now, minutes)
    if ctx.now < resume_at:
        markers[ctx.wait_key] = resume_at.isoformat()
        return StepOutcome(
            transition=Transition.WAIT,
            state=ctx.state.model_copy(update={"wait_until": markers}),
            run_at=resume_at,
        )

    markers.pop(ctx.wait_key, None)
    return StepOutcome(
        transition=Transition.ADVANCE,
        state=ctx.state.model_copy(update={"wait_until": markers}),
    )
