"""Tests for due-contact selection and compare-and-swap claiming."""

import asyncio
from datetime import timedelta

import pytest

from nurture.persistence import SQLiteAutomationRepository
from nurture.persistence.models import Contact, ContactStatus, Workflow
from nurture.scheduler import ContactScheduler


async def _seed(repo, clock, count=3):
    workflow = await repo.create_workflow(Workflow(id="wf-1", user_id="user-1"))
    contacts = []
    for index in range(count):
        contacts.append(
            await repo.create_contact(
                Contact(
                    workflow_id=workflow.id,
                    user_id="user-1",
                    email=f"c{index}@example.com",
                    next_run_at=clock() - timedelta(minutes=count - index),
                )
            )
        )
    return workflow, contacts


@pytest.mark.asyncio
async def test_claims_due_contacts_earliest_first(repo, clock):
    workflow, contacts = await _seed(repo, clock)
    later = await repo.create_contact(
        Contact(
            workflow_id=workflow.id,
            user_id="user-1",
            email="later@example.com",
            next_run_at=clock() + timedelta(minutes=5),
        )
    )
    scheduler = ContactScheduler(repo, clock=clock)

    claimed = await scheduler.claim_due(workflow.id, batch_size=2)

    assert [c.email for c in claimed] == ["c0@example.com", "c1@example.com"]
    assert all(c.status is ContactStatus.PROCESSING for c in claimed)
    assert all(c.processing_started_at == clock() for c in claimed)
    assert (await repo.get_contact(later.id)).status is ContactStatus.ACTIVE


@pytest.mark.asyncio
async def test_overlapping_claims_never_share_a_contact(repo, clock):
    workflow, contacts = await _seed(repo, clock, count=10)
    first = ContactScheduler(repo, clock=clock)
    second = ContactScheduler(repo, clock=clock)

    a, b = await asyncio.gather(first.claim_due(workflow.id), second.claim_due(workflow.id))

    ids_a = {c.id for c in a}
    ids_b = {c.id for c in b}
    assert not ids_a & ids_b
    assert ids_a | ids_b == {c.id for c in contacts}


@pytest.mark.asyncio
async def test_release_stale_returns_abandoned_leases(repo, clock):
    workflow, contacts = await _seed(repo, clock, count=2)
    scheduler = ContactScheduler(repo, clock=clock)
    await scheduler.claim_due(workflow.id)

    clock.advance(minutes=10)
    assert await scheduler.release_stale(workflow.id) == 0

    clock.advance(minutes=6)
    assert await scheduler.release_stale(workflow.id) == 2
    contact = await repo.get_contact(contacts[0].id)
    assert contact.status is ContactStatus.ACTIVE
    assert contact.processing_started_at is None


@pytest.mark.asyncio
async def test_sqlite_claim_is_compare_and_swap(tmp_path, clock):
    repo = SQLiteAutomationRepository(tmp_path / "nurture.db")
    workflow, contacts = await _seed(repo, clock, count=4)

    first = await repo.claim_contact(contacts[0].id, clock())
    second = await repo.claim_contact(contacts[0].id, clock())

    assert first is not None and first.status is ContactStatus.PROCESSING
    assert second is None

    a, b = await asyncio.gather(
        ContactScheduler(repo, clock=clock).claim_due(workflow.id),
        ContactScheduler(repo, clock=clock).claim_due(workflow.id),
    )
    assert len(a) + len(b) == 3
    assert not {c.id for c in a} & {c.id for c in b}
