"""Credit ledger client and audit log tests."""

from datetime import datetime, timezone

import pytest

from nurture.audit import AuditLog
from nurture.credits import DEBIT_EVENT, CreditLedger
from nurture.errors import CreditError
from nurture.persistence.models import Workflow


def test_reference_embeds_step_and_epoch_millis():
    at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    reference = CreditLedger.reference_for("wf", "c1", "send-1", at)
    assert reference == f"automation:wf:c1:step:send-1:{int(at.timestamp() * 1000)}"


@pytest.mark.asyncio
async def test_debit_and_refund_round_trip(repo):
    await repo.grant_credits("user-1", 2)
    ledger = CreditLedger(repo)

    result = await ledger.debit("user-1", "ref-1", {"workflow_id": "wf"})
    assert result.allowed
    assert result.credits_remaining == 1
    assert repo._ledger[("ref-1", "debit")]["event_type"] == DEBIT_EVENT

    assert await ledger.refund("user-1", "ref-1") == 2
    assert await ledger.refund("user-1", "ref-1") == 2


@pytest.mark.asyncio
async def test_debit_store_failure_raises_credit_error(repo):
    async def broken(*args, **kwargs):
        raise RuntimeError("connection reset")

    repo.consume_user_credits = broken
    with pytest.raises(CreditError, match="connection reset"):
        await CreditLedger(repo).debit("user-1", "ref-1")


@pytest.mark.asyncio
async def test_refund_store_failure_returns_none(repo):
    async def broken(*args, **kwargs):
        raise RuntimeError("connection reset")

    repo.refund_user_credits = broken
    assert await CreditLedger(repo).refund("user-1", "ref-1") is None


@pytest.mark.asyncio
async def test_audit_log_records_owner_and_clock(repo, clock):
    audit = AuditLog(repo, clock=clock)
    workflow = Workflow(id="wf", user_id="user-9")

    await audit.record(workflow, "c1", "wait_scheduled", 2, "Waiting.", {"node_id": "w"})

    entry = (await repo.list_logs("wf"))[0]
    assert entry.user_id == "user-9"
    assert entry.contact_id == "c1"
    assert entry.step_index == 2
    assert entry.metadata == {"node_id": "w"}
    assert entry.created_at == clock()


@pytest.mark.asyncio
async def test_audit_failures_are_swallowed(repo, clock, caplog):
    async def broken(entry):
        raise RuntimeError("log table missing")

    repo.append_log = broken
    await AuditLog(repo, clock=clock).record(Workflow(id="wf", user_id="u"), None, "x", None, "msg")
    assert "log table missing" in caplog.text
