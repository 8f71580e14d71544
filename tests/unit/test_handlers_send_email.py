"""Tests for the send_email step: metering, delivery, threading and refunds."""

from datetime import timedelta

import pytest

from nurture.handlers import Transition
from nurture.handlers.send_email import handle_send_email
from nurture.persistence.models import ContactState, EmailTemplate
from nurture.transports import InMemoryMailTransport

CONFIG = {"subject": "Hi {first_name}", "body": "Hello {name},\n\nWelcome aboard."}


@pytest.mark.asyncio
async def test_sends_personalised_email_and_debits_once(step_context, repo, mail, sender, clock):
    await repo.grant_credits("user-1", 5)

    outcome = await handle_send_email(step_context(CONFIG, step_key="send-1", title="Welcome"))

    assert outcome.transition is Transition.YIELD
    assert outcome.sent is True
    assert await repo.get_credit_balance("user-1") == 4
    used_sender, message = mail.outbox[0]
    assert used_sender.id == sender.id
    assert message.subject == "Hi Ada"
    assert message.to_email == "ada@example.com"
    assert message.from_email == "owner@example.com"
    assert message.from_name == "Olive Owner"
    assert message.html_body == "<p>Hello Ada Lovelace,</p><p>Welcome aboard.</p>"
    assert message.message_id.startswith("<") and message.message_id.endswith("@example.com>")
    assert message.headers["X-Mailer"]
    assert "In-Reply-To" not in message.headers

    state = outcome.state
    assert state.last_message_id == message.message_id
    assert state.thread_id == message.message_id
    assert state.last_sender_email == "owner@example.com"
    assert state.last_sent_at == clock()
    assert outcome.message.direction == "outbound"
    assert outcome.message.message_id == message.message_id
    assert outcome.events[0].event_type == "email_sent"


@pytest.mark.asyncio
async def test_follow_up_threads_with_previous_message(step_context, repo, mail, sender):
    await repo.grant_credits("user-1", 5)
    state = ContactState(last_message_id="<second@example.com>", thread_id="<first@example.com>")

    outcome = await handle_send_email(step_context(CONFIG, state=state))

    headers = mail.outbox[0][1].headers
    assert headers["In-Reply-To"] == "<second@example.com>"
    assert headers["References"] == "<first@example.com> <second@example.com>"
    assert outcome.state.thread_id == "<first@example.com>"
    assert outcome.message.references == ["<first@example.com>", "<second@example.com>"]


@pytest.mark.asyncio
async def test_threading_can_be_disabled(step_context, repo, mail, sender):
    await repo.grant_credits("user-1", 5)
    state = ContactState(last_message_id="<second@example.com>")
    await handle_send_email(step_context({**CONFIG, "thread_with_previous": "false"}, state=state))
    assert "In-Reply-To" not in mail.outbox[0][1].headers


@pytest.mark.asyncio
async def test_template_fallback_and_html_detection(step_context, repo, mail, sender):
    await repo.grant_credits("user-1", 1)
    await repo.save_template(
        EmailTemplate(id="tpl", user_id="user-1", subject="From template", content="<b>{company}</b>")
    )
    state = ContactState(company="Acme")

    await handle_send_email(step_context({"template_id": "tpl"}, state=state))

    message = mail.outbox[0][1]
    assert message.subject == "From template"
    assert message.html_body == "<b>Acme</b>"


@pytest.mark.asyncio
async def test_credit_decline_blocks_without_sending(step_context, repo, mail, sender, clock):
    outcome = await handle_send_email(step_context(CONFIG))

    assert outcome.transition is Transition.RETRY
    assert outcome.credit_blocked is True
    assert outcome.run_at == clock() + timedelta(minutes=60)
    assert mail.outbox == []
    assert outcome.events[0].event_type == "credit_blocked"
    assert outcome.events[0].metadata["credits_remaining"] == 0


@pytest.mark.asyncio
async def test_delivery_failure_refunds_and_retries(step_context, repo, services, sender, clock):
    await repo.grant_credits("user-1", 3)
    services.mail = InMemoryMailTransport(fail_with="550 mailbox unavailable")

    outcome = await handle_send_email(step_context(CONFIG))

    assert outcome.transition is Transition.RETRY
    assert outcome.credit_blocked is False
    assert outcome.run_at == clock() + timedelta(minutes=15)
    assert outcome.error == "550 mailbox unavailable"
    assert await repo.get_credit_balance("user-1") == 3
    assert outcome.state.last_message_id is None


@pytest.mark.asyncio
async def test_missing_sender_is_a_configuration_retry(step_context, repo, mail, clock):
    await repo.grant_credits("user-1", 3)

    outcome = await handle_send_email(step_context(CONFIG))

    assert outcome.transition is Transition.RETRY
    assert outcome.error == "No sender account is configured."
    assert outcome.run_at == clock() + timedelta(minutes=15)
    assert await repo.get_credit_balance("user-1") == 3


@pytest.mark.asyncio
async def test_empty_rendered_subject_is_rejected(step_context, repo, mail, sender):
    await repo.grant_credits("user-1", 3)
    outcome = await handle_send_email(step_context({"subject": "{unknown}", "body": "x"}))
    assert outcome.transition is Transition.RETRY
    assert outcome.error == "Email step subject is required."
    assert mail.outbox == []


@pytest.mark.asyncio
async def test_ledger_outage_is_retried_as_send_failure(step_context, repo, mail, sender):
    async def unavailable(*args, **kwargs):
        raise ConnectionError("ledger offline")

    repo.consume_user_credits = unavailable

    outcome = await handle_send_email(step_context(CONFIG))

    assert outcome.transition is Transition.RETRY
    assert outcome.credit_blocked is False
    assert "ledger offline" in outcome.error
    assert mail.outbox == []
