"""Repository abstraction for automation state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from .models import (
    AuditEntry,
    Contact,
    ContactUpdate,
    CreditResult,
    EmailMessage,
    EmailTemplate,
    ListMember,
    SenderConfig,
    Workflow,
    WorkflowStatus,
)


class AutomationRepository(Protocol):
    """Protocol for the relational store behind the automation engine."""

    # Workflows -----------------------------------------------------------
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        """Persist a workflow definition."""

    async def get_workflow(
        self, workflow_id: str, user_id: str | None = None
    ) -> Workflow | None:
        """Retrieve a workflow, optionally restricted to its owner."""

    async def list_workflows(
        self,
        statuses: Iterable[WorkflowStatus] | None = None,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        """Return workflows, most recently updated first."""

    async def record_run(
        self, workflow_id: str, finished_at: datetime, summary: dict[str, Any]
    ) -> None:
        """Store ``last_run_at`` and ``run_summary`` for a workflow."""

    # Contacts ------------------------------------------------------------
    async def create_contact(self, contact: Contact) -> Contact:
        """Insert a contact."""

    async def get_contact(self, contact_id: str) -> Contact | None:
        """Retrieve a contact by id."""

    async def find_contact(self, workflow_id: str, email: str) -> Contact | None:
        """Retrieve a workflow's contact by (normalised) email."""

    async def list_contacts(self, workflow_id: str) -> list[Contact]:
        """Return all contacts enrolled in a workflow."""

    async def fetch_due_contacts(
        self, workflow_id: str, now: datetime, limit: int
    ) -> list[Contact]:
        """Active contacts with ``next_run_at <= now``, earliest first."""

    async def claim_contact(self, contact_id: str, now: datetime) -> Contact | None:
        """Compare-and-swap ``active -> processing``; ``None`` if lost."""

    async def release_stale_contacts(
        self, workflow_id: str, older_than: datetime
    ) -> int:
        """Reset ``processing`` contacts whose lease started before ``older_than``."""

    async def apply_transition(
        self,
        contact_id: str,
        update: ContactUpdate,
        message: EmailMessage | None = None,
    ) -> None:
        """Apply a contact update and optional message record atomically."""

    async def save_contact(self, contact: Contact) -> Contact:
        """Overwrite a contact row (used by inbound trigger upserts)."""

    # Mail data -----------------------------------------------------------
    async def get_sender_config(
        self, user_id: str, config_id: str | None = None
    ) -> SenderConfig | None:
        """The requested sender config, else the user's newest one."""

    async def get_template(self, user_id: str, template_id: str) -> EmailTemplate | None:
        """Retrieve a user's email template."""

    async def insert_message(self, message: EmailMessage) -> None:
        """Append a durable message record."""

    async def count_inbound_messages(
        self,
        user_id: str,
        from_email: str,
        since: datetime | None = None,
        to_email: str | None = None,
    ) -> int:
        """Count inbound messages from ``from_email`` (case-insensitive)."""

    # Audit log -----------------------------------------------------------
    async def append_log(self, entry: AuditEntry) -> None:
        """Append an automation log entry."""

    async def list_logs(
        self, workflow_id: str, contact_id: str | None = None
    ) -> list[AuditEntry]:
        """Return log entries in insertion order."""

    # Atomic operations ---------------------------------------------------
    async def consume_user_credits(
        self,
        user_id: str,
        amount: int,
        event_type: str,
        reference_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> CreditResult:
        """Debit ``amount`` once per ``reference_id`` if the balance allows it."""

    async def refund_user_credits(
        self,
        user_id: str,
        amount: int,
        event_type: str,
        reference_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Refund a prior debit once per ``reference_id``; returns the balance."""

    async def enroll_workflow_contacts(
        self, workflow_id: str, limit: int, now: datetime
    ) -> int:
        """Enroll list members not yet enrolled; returns the number added."""

    # Administrative writes (dashboard side) -----------------------------
    async def save_sender_config(self, config: SenderConfig) -> None:
        """Insert or replace a sender config."""

    async def save_template(self, template: EmailTemplate) -> None:
        """Insert or replace an email template."""

    async def add_list_member(self, member: ListMember) -> None:
        """Add a prospect to an email list."""

    async def grant_credits(self, user_id: str, amount: int) -> int:
        """Top up a user's balance; returns the new balance."""

    async def get_credit_balance(self, user_id: str) -> int:
        """Current balance, zero for unknown users."""
