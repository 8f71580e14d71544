from datetime import timedelta

import pytest

from nurture.persistence import (
    InMemoryAutomationRepository,
    SQLiteAutomationRepository,
    get_repository,
)
from nurture.persistence.models import (
    AuditEntry,
    Contact,
    ContactState,
    ContactStatus,
    ContactUpdate,
    EmailMessage,
    ListMember,
    SenderConfig,
    Workflow,
    WorkflowStatus,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryAutomationRepository()
    return SQLiteAutomationRepository(tmp_path / "nurture.db")


@pytest.mark.asyncio
async def test_workflow_crud_and_filters(store, clock):
    live = Workflow(id="a", user_id="u1", status="live", updated_at=clock())
    paused = Workflow(id="b", user_id="u1", status="paused", updated_at=clock() + timedelta(minutes=1))
    other = Workflow(id="c", user_id="u2", status="live", updated_at=clock() + timedelta(minutes=2))
    for wf in (live, paused, other):
        await store.create_workflow(wf)

    assert (await store.get_workflow("a")).status is WorkflowStatus.LIVE
    assert await store.get_workflow("a", user_id="u2") is None
    assert [w.id for w in await store.list_workflows()] == ["c", "b", "a"]
    assert [w.id for w in await store.list_workflows(statuses=[WorkflowStatus.LIVE])] == ["c", "a"]
    assert [w.id for w in await store.list_workflows(user_id="u1", limit=1)] == ["b"]

    await store.record_run("a", clock(), {"processed": 2})
    stored = await store.get_workflow("a")
    assert stored.run_summary == {"processed": 2}
    assert stored.last_run_at == clock()


def test_unknown_status_reads_as_draft():
    assert Workflow(user_id="u", status="deleted").status is WorkflowStatus.DRAFT


@pytest.mark.asyncio
async def test_apply_transition_writes_contact_and_message_together(store, clock):
    await store.create_workflow(Workflow(id="wf", user_id="u1"))
    contact = await store.create_contact(
        Contact(workflow_id="wf", user_id="u1", email="Ada@Example.com", next_run_at=clock())
    )
    assert contact.email == "ada@example.com"

    state = ContactState(current_node_id="exit", last_message_id="<m1@example.com>", plan="pro")
    message = EmailMessage(
        user_id="u1",
        from_email="owner@example.com",
        to_email="ada@example.com",
        subject="Hello",
        message_id="<m1@example.com>",
        references=["<m0@example.com>"],
    )
    await store.apply_transition(
        contact.id,
        ContactUpdate(current_step=2, next_run_at=None, last_error=None, state=state),
        message,
    )

    stored = await store.find_contact("wf", "ADA@example.com")
    assert stored.current_step == 2
    assert stored.next_run_at is None
    assert stored.status is ContactStatus.ACTIVE
    assert stored.state.current_node_id == "exit"
    assert stored.state.lookup("plan") == "pro"
    assert await store.count_inbound_messages("u1", "ada@example.com") == 0


@pytest.mark.asyncio
async def test_inbound_message_count_filters(store, clock):
    await store.insert_message(
        EmailMessage(
            user_id="u1",
            from_email="Ada@Example.com",
            to_email="owner@example.com",
            date=clock(),
            folder="INBOX",
            direction="inbound",
        )
    )
    assert await store.count_inbound_messages("u1", "ada@example.com") == 1
    assert await store.count_inbound_messages("u1", "ada@example.com", since=clock() + timedelta(seconds=1)) == 0
    assert await store.count_inbound_messages("u1", "ada@example.com", to_email="x@example.com") == 0
    assert await store.count_inbound_messages("u2", "ada@example.com") == 0


@pytest.mark.asyncio
async def test_sender_config_prefers_requested_then_newest(store, clock):
    old = SenderConfig(id="s1", user_id="u1", smtp_host="h", smtp_username="a@x.io", created_at=clock())
    new = SenderConfig(
        id="s2", user_id="u1", smtp_host="h", smtp_username="b@x.io", created_at=clock() + timedelta(days=1)
    )
    await store.save_sender_config(old)
    await store.save_sender_config(new)

    assert (await store.get_sender_config("u1")).id == "s2"
    assert (await store.get_sender_config("u1", "s1")).id == "s1"
    assert (await store.get_sender_config("u1", "missing")).id == "s2"
    assert await store.get_sender_config("u2") is None


@pytest.mark.asyncio
async def test_credit_debit_is_idempotent_and_refund_happens_once(store):
    await store.grant_credits("u1", 2)

    first = await store.consume_user_credits("u1", 1, "send", "ref-1")
    again = await store.consume_user_credits("u1", 1, "send", "ref-1")
    assert first.allowed and again.allowed
    assert await store.get_credit_balance("u1") == 1

    assert await store.refund_user_credits("u1", 1, "refund", "ref-1") == 2
    assert await store.refund_user_credits("u1", 1, "refund", "ref-1") == 2
    assert await store.refund_user_credits("u1", 1, "refund", "never-debited") == 2

    await store.consume_user_credits("u1", 1, "send", "ref-2")
    await store.consume_user_credits("u1", 1, "send", "ref-3")
    declined = await store.consume_user_credits("u1", 1, "send", "ref-4")
    assert not declined.allowed
    assert declined.credits_remaining == 0


@pytest.mark.asyncio
async def test_enrollment_skips_existing_and_respects_limit(store, clock):
    workflow = Workflow(id="wf", user_id="u1", status="live", trigger_list_id="list-1")
    await store.create_workflow(workflow)
    for email in ("a@x.io", "B@x.io", "c@x.io", "d@x.io"):
        await store.add_list_member(ListMember(list_id="list-1", user_id="u1", email=email, name="Member"))
    await store.add_list_member(ListMember(list_id="list-2", user_id="u1", email="z@x.io"))
    await store.create_contact(Contact(workflow_id="wf", user_id="u1", email="a@x.io"))

    assert await store.enroll_workflow_contacts("wf", 2, clock()) == 2
    assert await store.enroll_workflow_contacts("wf", 10, clock()) == 1
    assert await store.enroll_workflow_contacts("wf", 10, clock()) == 0

    contacts = {c.email: c for c in await store.list_contacts("wf")}
    assert set(contacts) == {"a@x.io", "b@x.io", "c@x.io", "d@x.io"}
    enrolled = contacts["b@x.io"]
    assert enrolled.status is ContactStatus.ACTIVE
    assert enrolled.current_step == 0
    assert enrolled.next_run_at == clock()
    assert enrolled.state.full_name == "Member"


@pytest.mark.asyncio
async def test_logs_are_append_only_in_order(store, clock):
    for index, event in enumerate(("wait_scheduled", "email_sent", "workflow_completed")):
        await store.append_log(
            AuditEntry(
                workflow_id="wf",
                contact_id="c1" if index != 1 else "c2",
                user_id="u1",
                event_type=event,
                metadata={"i": index},
                created_at=clock(),
            )
        )
    entries = await store.list_logs("wf")
    assert [e.event_type for e in entries] == ["wait_scheduled", "email_sent", "workflow_completed"]
    assert [e.event_type for e in await store.list_logs("wf", contact_id="c2")] == ["email_sent"]
    assert entries[2].metadata == {"i": 2}


def test_get_repository_selects_backend(tmp_path):
    assert isinstance(get_repository(), InMemoryAutomationRepository)
    assert get_repository() is get_repository()

    repo = get_repository(f"sqlite://{tmp_path / 'db.sqlite'}")
    assert isinstance(repo, SQLiteAutomationRepository)

    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")
