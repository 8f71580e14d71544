"""In-memory implementation of the automation repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Tuple

from ..utils.clock import ensure_utc
from .models import (
    AuditEntry,
    Contact,
    ContactState,
    ContactStatus,
    ContactUpdate,
    CreditResult,
    EmailMessage,
    EmailTemplate,
    ListMember,
    SenderConfig,
    Workflow,
    WorkflowStatus,
    enrollment_contact,
)
from .repository import AutomationRepository


class InMemoryAutomationRepository(AutomationRepository):
    """Store automation state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every method body runs without
    awaiting, so each call is atomic with respect to other coroutines on the
    same event loop; that is what makes ``claim_contact`` a real
    compare-and-swap here.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._contacts: Dict[str, Contact] = {}
        self._senders: Dict[str, SenderConfig] = {}
        self._templates: Dict[str, EmailTemplate] = {}
        self._messages: List[EmailMessage] = []
        self._members: List[ListMember] = []
        self._logs: List[AuditEntry] = []
        self._balances: Dict[str, int] = {}
        self._ledger: Dict[Tuple[str, str], Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    async def get_workflow(
        self, workflow_id: str, user_id: str | None = None
    ) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        if wf is None or (user_id is not None and wf.user_id != user_id):
            return None
        return wf.model_copy(deep=True)

    async def list_workflows(
        self,
        statuses: Iterable[WorkflowStatus] | None = None,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            wf
            for wf in self._workflows.values()
            if (wanted is None or wf.status in wanted)
            and (user_id is None or wf.user_id == user_id)
        ]
        rows.sort(key=lambda wf: wf.updated_at, reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [wf.model_copy(deep=True) for wf in rows]

    async def record_run(
        self, workflow_id: str, finished_at: datetime, summary: dict[str, Any]
    ) -> None:
        wf = self._workflows.get(workflow_id)
        if wf:
            wf.last_run_at = finished_at
            wf.run_summary = dict(summary)

    # ------------------------------------------------------------------
    async def create_contact(self, contact: Contact) -> Contact:
        contact = contact.model_copy(update={"email": contact.email.strip().lower()})
        self._contacts[contact.id] = contact.model_copy(deep=True)
        return contact

    async def get_contact(self, contact_id: str) -> Contact | None:
        contact = self._contacts.get(contact_id)
        return contact.model_copy(deep=True) if contact else None

    async def find_contact(self, workflow_id: str, email: str) -> Contact | None:
        email = email.strip().lower()
        for contact in self._contacts.values():
            if contact.workflow_id == workflow_id and contact.email == email:
                return contact.model_copy(deep=True)
        return None

    async def list_contacts(self, workflow_id: str) -> list[Contact]:
        return [
            c.model_copy(deep=True)
            for c in self._contacts.values()
            if c.workflow_id == workflow_id
        ]

    async def fetch_due_contacts(
        self, workflow_id: str, now: datetime, limit: int
    ) -> list[Contact]:
        due = [
            c
            for c in self._contacts.values()
            if c.workflow_id == workflow_id
            and c.status == ContactStatus.ACTIVE
            and c.next_run_at is not None
            and ensure_utc(c.next_run_at) <= now
        ]
        due.sort(key=lambda c: ensure_utc(c.next_run_at))
        return [c.model_copy(deep=True) for c in due[:limit]]

    async def claim_contact(self, contact_id: str, now: datetime) -> Contact | None:
        contact = self._contacts.get(contact_id)
        if contact is None or contact.status != ContactStatus.ACTIVE:
            return None
        contact.status = ContactStatus.PROCESSING
        contact.processing_started_at = now
        return contact.model_copy(deep=True)

    async def release_stale_contacts(
        self, workflow_id: str, older_than: datetime
    ) -> int:
        released = 0
        for contact in self._contacts.values():
            if (
                contact.workflow_id == workflow_id
                and contact.status == ContactStatus.PROCESSING
                and contact.processing_started_at is not None
                and ensure_utc(contact.processing_started_at) < older_than
            ):
                contact.status = ContactStatus.ACTIVE
                contact.processing_started_at = None
                released += 1
        return released

    async def apply_transition(
        self,
        contact_id: str,
        update: ContactUpdate,
        message: EmailMessage | None = None,
    ) -> None:
        contact = self._contacts.get(contact_id)
        if contact is None:
            return
        for name, value in update.changes().items():
            if isinstance(value, ContactState):
                value = value.model_copy(deep=True)
            setattr(contact, name, value)
        if message is not None:
            self._messages.append(message.model_copy(deep=True))

    async def save_contact(self, contact: Contact) -> Contact:
        self._contacts[contact.id] = contact.model_copy(deep=True)
        return contact

    # ------------------------------------------------------------------
    async def get_sender_config(
        self, user_id: str, config_id: str | None = None
    ) -> SenderConfig | None:
        if config_id:
            sender = self._senders.get(config_id)
            if sender and sender.user_id == user_id:
                return sender
        owned = [s for s in self._senders.values() if s.user_id == user_id]
        if not owned:
            return None
        return max(owned, key=lambda s: s.created_at)

    async def get_template(self, user_id: str, template_id: str) -> EmailTemplate | None:
        template = self._templates.get(template_id)
        if template and template.user_id == user_id:
            return template
        return None

    async def insert_message(self, message: EmailMessage) -> None:
        self._messages.append(message.model_copy(deep=True))

    async def count_inbound_messages(
        self,
        user_id: str,
        from_email: str,
        since: datetime | None = None,
        to_email: str | None = None,
    ) -> int:
        count = 0
        for msg in self._messages:
            if msg.user_id != user_id or msg.direction != "inbound":
                continue
            if msg.from_email.lower() != from_email.lower():
                continue
            if since is not None and ensure_utc(msg.date) < ensure_utc(since):
                continue
            if to_email and msg.to_email.lower() != to_email.lower():
                continue
            count += 1
        return count

    def messages(self) -> list[EmailMessage]:
        return list(self._messages)

    # ------------------------------------------------------------------
    async def append_log(self, entry: AuditEntry) -> None:
        self._logs.append(entry.model_copy(update={"id": len(self._logs) + 1}))

    async def list_logs(
        self, workflow_id: str, contact_id: str | None = None
    ) -> list[AuditEntry]:
        return [
            e
            for e in self._logs
            if e.workflow_id == workflow_id
            and (contact_id is None or e.contact_id == contact_id)
        ]

    # ------------------------------------------------------------------
    async def consume_user_credits(
        self,
        user_id: str,
        amount: int,
        event_type: str,
        reference_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> CreditResult:
        balance = self._balances.get(user_id, 0)
        if (reference_id, "debit") in self._ledger:
            return CreditResult(allowed=True, credits_remaining=balance)
        if balance < amount:
            return CreditResult(
                allowed=False, credits_remaining=balance, message="Insufficient credits"
            )
        self._balances[user_id] = balance - amount
        self._ledger[(reference_id, "debit")] = {
            "user_id": user_id,
            "amount": amount,
            "event_type": event_type,
            "metadata": dict(metadata or {}),
        }
        return CreditResult(allowed=True, credits_remaining=balance - amount)

    async def refund_user_credits(
        self,
        user_id: str,
        amount: int,
        event_type: str,
        reference_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        balance = self._balances.get(user_id, 0)
        debit = self._ledger.get((reference_id, "debit"))
        if debit is None or (reference_id, "refund") in self._ledger:
            return balance
        refund = min(amount, int(debit["amount"]))
        self._balances[user_id] = balance + refund
        self._ledger[(reference_id, "refund")] = {
            "user_id": user_id,
            "amount": refund,
            "event_type": event_type,
            "metadata": dict(metadata or {}),
        }
        return balance + refund

    async def enroll_workflow_contacts(
        self, workflow_id: str, limit: int, now: datetime
    ) -> int:
        wf = self._workflows.get(workflow_id)
        if wf is None or not wf.trigger_list_id:
            return 0
        enrolled = {
            c.email for c in self._contacts.values() if c.workflow_id == workflow_id
        }
        added = 0
        for member in self._members:
            if added >= limit:
                break
            email = member.email.strip().lower()
            if member.list_id != wf.trigger_list_id or not email or email in enrolled:
                continue
            contact = enrollment_contact(wf, member, now)
            self._contacts[contact.id] = contact
            enrolled.add(email)
            added += 1
        return added

    # ------------------------------------------------------------------
    async def save_sender_config(self, config: SenderConfig) -> None:
        self._senders[config.id] = config

    async def save_template(self, template: EmailTemplate) -> None:
        self._templates[template.id] = template

    async def add_list_member(self, member: ListMember) -> None:
        self._members.append(member)

    async def grant_credits(self, user_id: str, amount: int) -> int:
        self._balances[user_id] = self._balances.get(user_id, 0) + amount
        return self._balances[user_id]

    async def get_credit_balance(self, user_id: str) -> int:
        return self._balances.get(user_id, 0)

