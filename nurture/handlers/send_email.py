"""Send a personalised email from the owner's sender account."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from ..errors import ConfigurationError, CreditError, error_message
from ..persistence.models import EmailMessage, EmailTemplate, SenderConfig
from ..personalize import looks_like_html, personalize, plain_text_to_html
from ..transports.base import OutgoingEmail
from ..utils.retry import RetryKind
from .base import AuditEvent, StepContext, StepOutcome, Transition

logger = logging.getLogger(__name__)


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "no", "off")
    return bool(value)


async def load_sender(ctx: StepContext) -> SenderConfig:
    config_id = str(ctx.config.get("sender_config_id") or "") or None
    sender = await ctx.services.repository.get_sender_config(ctx.workflow.user_id, config_id)
    if sender is None:
        raise ConfigurationError("No sender account is configured.")
    return sender


async def load_template(ctx: StepContext) -> Optional[EmailTemplate]:
    template_id = ctx.config.get("template_id")
    if not template_id:
        return None
    return await ctx.services.repository.get_template(ctx.workflow.user_id, str(template_id))


def thread_headers(ctx: StepContext) -> Dict[str, str]:
    if not _flag(ctx.config.get("thread_with_previous"), True):
        return {}
    last_id = ctx.state.last_message_id
    if not last_id:
        return {}
    references = f"{ctx.state.thread_id} {last_id}" if ctx.state.thread_id else last_id
    return {"In-Reply-To": last_id, "References": references}


async def handle_send_email(ctx: StepContext) -> StepOutcome:
    services = ctx.services
    retry = services.settings.retry

    def retry_outcome(kind: RetryKind, message: str, event_type: str, **extra: Any) -> StepOutcome:
        logger.warning(f"Email step {ctx.step_key} for contact {ctx.contact.id}: {message}")
        return StepOutcome(
            transition=Transition.RETRY,
            state=ctx.state,
            run_at=retry.next_attempt_at(kind, ctx.now),
            error=message,
            credit_blocked=event_type == "credit_blocked",
            events=[
                AuditEvent(
                    event_type=event_type,
                    message=(
                        "Paused send because credits are exhausted."
                        if event_type == "credit_blocked"
                        else f"Send failed: {message}"
                    ),
                    metadata={"node_id": ctx.step_key, **extra},
                )
            ],
        )

    try:
        sender = await load_sender(ctx)
        template = await load_template(ctx)
        subject_raw = str(ctx.config.get("subject") or (template.subject if template else "") or "").strip()
        body_raw = str(ctx.config.get("body") or (template.content if template else "") or "").strip()
        if not subject_raw:
            raise ConfigurationError("Email step subject is required.")
        if not body_raw:
            raise ConfigurationError("Email step body is required.")
    except ConfigurationError as e:
        return retry_outcome(RetryKind.SEND, error_message(e), "email_send_failed")

    is_html_raw = ctx.config.get("is_html")
    if is_html_raw is None and template is not None:
        is_html_raw = template.is_html
    is_html = _flag(is_html_raw, looks_like_html(body_raw))

    sender_email = sender.smtp_username.strip()
    subject = personalize(subject_raw, ctx.contact, ctx.state, sender.sender_name, sender_email)
    body = personalize(body_raw, ctx.contact, ctx.state, sender.sender_name, sender_email)
    if not subject.strip():
        return retry_outcome(RetryKind.SEND, "Email step subject is required.", "email_send_failed")
    if not body.strip():
        return retry_outcome(RetryKind.SEND, "Email step body is required.", "email_send_failed")
    html_body = body if is_html else plain_text_to_html(body)

    reference = services.ledger.reference_for(
        ctx.workflow.id, ctx.contact.id, ctx.step_key, ctx.now
    )
    try:
        credit = await services.ledger.debit(
            ctx.workflow.user_id,
            reference,
            {
                "source": "automation",
                "workflow_id": ctx.workflow.id,
                "workflow_name": ctx.workflow.name,
                "contact_id": ctx.contact.id,
                "step_index": ctx.step_index,
                "node_id": ctx.step_key,
                "sender_config_id": sender.id,
                "recipient": ctx.contact.email,
            },
        )
    except CreditError as e:
        return retry_outcome(RetryKind.SEND, error_message(e), "email_send_failed")
    if not credit.allowed:
        return retry_outcome(
            RetryKind.CREDIT,
            credit.message or "Insufficient credits",
            "credit_blocked",
            credits_remaining=credit.credits_remaining,
        )

    domain = sender_email.split("@", 1)[1] if "@" in sender_email else "example.com"
    headers = {"X-Mailer": services.mailer_name}
    headers.update(thread_headers(ctx))
    outgoing = OutgoingEmail(
        from_name=(sender.sender_name or "").strip() or ctx.workflow.name or "Automation",
        from_email=sender_email,
        to_email=ctx.contact.email,
        subject=subject,
        html_body=html_body,
        text_body=body,
        message_id=f"<{uuid.uuid4()}@{domain}>",
        headers=headers,
    )

    try:
        receipt = await services.mail.send(sender, outgoing)
    except Exception as e:
        message = error_message(e)
        await services.ledger.refund(
            ctx.workflow.user_id,
            reference,
            {
                "source": "automation",
                "workflow_id": ctx.workflow.id,
                "contact_id": ctx.contact.id,
                "step_index": ctx.step_index,
                "node_id": ctx.step_key,
                "reason": "send_failure",
                "error": message,
            },
        )
        return retry_outcome(RetryKind.SEND, message, "email_send_failed")

    message_id = receipt.message_id or outgoing.message_id
    thread_id = ctx.state.thread_id or message_id
    state = ctx.state.model_copy(
        update={
            "full_name": ctx.contact.full_name or ctx.state.full_name,
            "email": ctx.contact.email,
            "last_sent_at": ctx.now,
            "last_message_id": message_id,
            "thread_id": thread_id,
            "last_sender_email": sender_email,
            "last_sender_config_id": sender.id,
            "last_subject": subject,
        }
    )
    record = EmailMessage(
        user_id=ctx.workflow.user_id,
        config_id=sender.id,
        from_email=sender_email,
        to_email=ctx.contact.email,
        subject=subject,
        body=html_body if is_html else body,
        date=ctx.now,
        folder="Sent",
        message_id=message_id,
        in_reply_to=outgoing.headers.get("In-Reply-To"),
        references=outgoing.headers.get("References", "").split(),
        thread_id=thread_id,
        direction="outbound",
    )
    return StepOutcome(
        transition=Transition.YIELD,
        state=state,
        sent=True,
        message=record,
        events=[
            AuditEvent(
                event_type="email_sent",
                message=f'Sent step "{ctx.title or "Email"}" to {ctx.contact.email}.',
                metadata={
                    "sender_config_id": sender.id,
                    "message_id": message_id,
                    "smtp_response": receipt.response,
                    "node_id": ctx.step_key,
                },
            )
        ],
    )
