"""Branch on engagement signals and contact data."""

from __future__ import annotations

import logging
import re
from typing import List, Optional

from ..contracts import ConditionClause
from ..errors import ConditionLookupError, error_message
from ..graph import normalize_condition_config
from ..utils.retry import RetryKind
from .base import AuditEvent, StepContext, StepOutcome, Transition

logger = logging.getLogger(__name__)

_ELSE_IF = re.compile(r"^else_if_(\d+)$")


def _domain(email: str) -> str:
    return email.split("@", 1)[1] if "@" in email else ""


def _contains(haystack: object, needle: str) -> bool:
    return bool(needle) and needle in str(haystack or "").lower()


def branch_label(handle: str) -> str:
    if handle == "if":
        return "If"
    if handle == "else":
        return "Else"
    match = _ELSE_IF.match(handle)
    return f"Else If {match.group(1)}" if match else "Else If"


async def _has_replied(ctx: StepContext) -> bool:
    try:
        count = await ctx.services.repository.count_inbound_messages(
            ctx.workflow.user_id,
            ctx.contact.email.strip().lower(),
            since=ctx.state.last_sent_at,
            to_email=ctx.state.last_sender_email,
        )
    except Exception as e:
        raise ConditionLookupError(f"Condition check failed: {error_message(e)}") from e
    return count > 0


def _property_value(ctx: StepContext, key: str) -> str:
    email = ctx.contact.email.strip().lower()
    if key == "email_domain":
        return _domain(email)
    if ctx.state.has_key(key):
        value = ctx.state.lookup(key)
        if isinstance(value, list):
            return ",".join(str(v) for v in value)
        return str(value if value is not None else "")
    if key in type(ctx.contact).model_fields and key != "state":
        value = getattr(ctx.contact, key)
        return str(value.value if hasattr(value, "value") else value or "")
    return ""


async def evaluate_clause(ctx: StepContext, clause: ConditionClause) -> bool:
    """Return whether ``clause`` holds for the contact.

    Raises:
        ConditionLookupError: If a signal could not be read.
    """
    rule = clause.rule.lower()
    expected = clause.value.strip().lower()
    state = ctx.state

    if rule in ("has_replied", "email_opened"):
        return await _has_replied(ctx)
    if rule == "email_clicked":
        return bool(
            state.last_clicked_at
            or state.email_clicked is True
            or state.lookup("clicked") is True
        )
    if rule == "user_property":
        key = clause.property_key.strip()
        if not key:
            return False
        actual = _property_value(ctx, key).lower()
        if clause.comparator == "equals":
            return actual == expected
        if clause.comparator == "contains":
            return _contains(actual, expected)
        return len(actual) > 0
    if rule == "tag_exists":
        return bool(expected) and any(tag.lower() == expected for tag in state.tags)
    if rule == "custom_event":
        return bool(expected) and any(e.lower() == expected for e in state.custom_events)
    if rule == "email_domain_contains":
        return _contains(_domain(ctx.contact.email.strip().lower()), expected)
    if rule == "company_contains":
        return _contains(state.company, expected)
    if rule == "job_title_contains":
        return _contains(state.job_title, expected)

    logger.warning(f"Unknown condition rule {rule!r} on step {ctx.step_key}; treating as false")
    return False


async def pick_branch(
    ctx: StepContext, clauses: List[ConditionClause]
) -> tuple[str, Optional[ConditionClause]]:
    """First matching clause wins; ``else`` when none match."""
    for clause in clauses:
        if await evaluate_clause(ctx, clause):
            return clause.handle, clause
    return "else", None


async def handle_condition(ctx: StepContext) -> StepOutcome:
    if ctx.node is not None:
        clauses = ctx.node.clauses or normalize_condition_config(ctx.config)
    else:
        clauses = normalize_condition_config(
            {**ctx.config, "rule": ctx.config.get("rule") or "has_replied"}
        )

    try:
        handle, clause = await pick_branch(ctx, clauses)
    except ConditionLookupError as e:
        retry = ctx.services.settings.retry
        return StepOutcome(
            transition=Transition.RETRY,
            state=ctx.state,
            run_at=retry.next_attempt_at(RetryKind.CONDITION, ctx.now),
            error=error_message(e),
            events=[
                AuditEvent(
                    event_type="condition_failed",
                    message=error_message(e),
                    metadata={"node_id": ctx.step_key},
                )
            ],
        )

    if ctx.node is None:
        return _legacy_outcome(ctx, handle == "if", clauses[0])

    return StepOutcome(
        transition=Transition.ADVANCE,
        state=ctx.state,
        branch=handle,
        events=[
            AuditEvent(
                event_type="condition_evaluated",
                message=f"Condition routed to {branch_label(handle)}.",
                metadata={
                    "branch": handle,
                    "rule": clause.rule if clause else None,
                    "value": (clause.value or None) if clause else None,
                    "node_id": ctx.step_key,
                },
            )
        ],
    )


def _legacy_outcome(ctx: StepContext, result: bool, clause: ConditionClause) -> StepOutcome:
    """Apply ``if_true``/``if_false`` (``continue`` or ``stop``) of a legacy step."""
    key = "if_true" if result else "if_false"
    action = str(ctx.config.get(key) or "continue").lower()
    events = [
        AuditEvent(
            event_type="condition_evaluated",
            message=f"Condition result: {'true' if result else 'false'} ({action}).",
            metadata={"rule": clause.rule, "value": clause.value or None},
        )
    ]
    if action == "stop":
        events.append(
            AuditEvent(
                event_type="workflow_stopped_by_condition",
                message="Condition ended the workflow.",
            )
        )
        return StepOutcome(transition=Transition.COMPLETE, state=ctx.state, events=events)
    return StepOutcome(
        transition=Transition.ADVANCE,
        state=ctx.state,
        branch="if" if result else "else",
        events=events,
    )
