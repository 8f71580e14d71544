"""PostgreSQL implementation of the automation repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable

import asyncpg

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

_CONTACT_COLUMNS = (
    "id, workflow_id, user_id, email, full_name, status, current_step, next_run_at, "
    "processing_started_at, completed_at, last_error, state, created_at"
)
_CONTACT_VALUES = "$1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13"


def _loads(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class PostgresAutomationRepository(AutomationRepository):
    """Persist automation state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS automation_workflows (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_list_id TEXT,
                trigger_filters JSONB NOT NULL DEFAULT '{}'::jsonb,
                flow JSONB NOT NULL DEFAULT '[]'::jsonb,
                settings JSONB NOT NULL DEFAULT '{}'::jsonb,
                last_run_at TIMESTAMPTZ,
                run_summary JSONB,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS automation_contacts (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                email TEXT NOT NULL,
                full_name TEXT,
                status TEXT NOT NULL,
                current_step INTEGER NOT NULL DEFAULT 0,
                next_run_at TIMESTAMPTZ,
                processing_started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                last_error TEXT,
                state JSONB NOT NULL DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL,
                UNIQUE (workflow_id, email)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS email_configs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                smtp_host TEXT NOT NULL,
                smtp_port INTEGER NOT NULL,
                smtp_username TEXT NOT NULL,
                smtp_password TEXT NOT NULL,
                security TEXT NOT NULL,
                sender_name TEXT,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS email_templates (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                subject TEXT NOT NULL,
                content TEXT NOT NULL,
                is_html BOOLEAN
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS email_messages (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                config_id TEXT,
                from_email TEXT NOT NULL,
                to_email TEXT NOT NULL,
                subject TEXT,
                body TEXT,
                date TIMESTAMPTZ NOT NULL,
                folder TEXT,
                message_id TEXT,
                in_reply_to TEXT,
                refs JSONB NOT NULL DEFAULT '[]'::jsonb,
                thread_id TEXT,
                direction TEXT NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS email_list_members (
                id SERIAL PRIMARY KEY,
                list_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                email TEXT NOT NULL,
                name TEXT,
                company TEXT,
                job_title TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS automation_logs (
                id SERIAL PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                contact_id TEXT,
                user_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                step_index INTEGER,
                message TEXT,
                metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_credits (
                user_id TEXT PRIMARY KEY,
                credits INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credit_ledger (
                reference_id TEXT NOT NULL,
                entry_kind TEXT NOT NULL,
                user_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                PRIMARY KEY (reference_id, entry_kind)
            )
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _workflow(row: asyncpg.Record) -> Workflow:
        return Workflow(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            status=row["status"],
            trigger_type=row["trigger_type"],
            trigger_list_id=row["trigger_list_id"],
            trigger_filters=_loads(row["trigger_filters"], {}),
            flow=_loads(row["flow"], []),
            settings=_loads(row["settings"], {}),
            last_run_at=row["last_run_at"],
            run_summary=_loads(row["run_summary"], None),
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _contact(row: asyncpg.Record) -> Contact:
        return Contact(
            id=row["id"],
            workflow_id=row["workflow_id"],
            user_id=row["user_id"],
            email=row["email"],
            full_name=row["full_name"],
            status=row["status"],
            current_step=row["current_step"],
            next_run_at=row["next_run_at"],
            processing_started_at=row["processing_started_at"],
            completed_at=row["completed_at"],
            last_error=row["last_error"],
            state=_loads(row["state"], {}),
            created_at=row["created_at"],
        )

    @staticmethod
    def _contact_params(contact: Contact) -> tuple:
        return (
            contact.id,
            contact.workflow_id,
            contact.user_id,
            contact.email.strip().lower(),
            contact.full_name,
            contact.status.value,
            contact.current_step,
            ensure_utc(contact.next_run_at),
            ensure_utc(contact.processing_started_at),
            ensure_utc(contact.completed_at),
            contact.last_error,
            _dumps(contact.state.model_dump(mode="json")),
            ensure_utc(contact.created_at),
        )

    @staticmethod
    async def _insert_message(conn: asyncpg.Connection, message: EmailMessage) -> None:
        await conn.execute(
            """
            INSERT INTO email_messages (id, user_id, config_id, from_email, to_email, subject,
                body, date, folder, message_id, in_reply_to, refs, thread_id, direction)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13, $14)
            """,
            message.id,
            message.user_id,
            message.config_id,
            message.from_email,
            message.to_email,
            message.subject,
            message.body,
            ensure_utc(message.date),
            message.folder,
            message.message_id,
            message.in_reply_to,
            _dumps(message.references),
            message.thread_id,
            message.direction,
        )

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO automation_workflows (id, user_id, name, status, trigger_type,
                    trigger_list_id, trigger_filters, flow, settings, last_run_at,
                    run_summary, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9::jsonb, $10,
                    $11::jsonb, $12)
                """,
                workflow.id,
                workflow.user_id,
                workflow.name,
                workflow.status.value,
                workflow.trigger_type,
                workflow.trigger_list_id,
                _dumps(workflow.trigger_filters),
                _dumps(workflow.flow),
                _dumps(workflow.settings),
                ensure_utc(workflow.last_run_at),
                _dumps(workflow.run_summary) if workflow.run_summary is not None else None,
                ensure_utc(workflow.updated_at),
            )
        finally:
            await conn.close()
        return workflow

    async def get_workflow(
        self, workflow_id: str, user_id: str | None = None
    ) -> Workflow | None:
        conn = await self._connect()
        try:
            if user_id is None:
                row = await conn.fetchrow(
                    "SELECT * FROM automation_workflows WHERE id = $1", workflow_id
                )
            else:
                row = await conn.fetchrow(
                    "SELECT * FROM automation_workflows WHERE id = $1 AND user_id = $2",
                    workflow_id,
                    user_id,
                )
        finally:
            await conn.close()
        return self._workflow(row) if row else None

    async def list_workflows(
        self,
        statuses: Iterable[WorkflowStatus] | None = None,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        clauses: list[str] = []
        params: list[Any] = []
        if statuses is not None:
            params.append([s.value for s in statuses])
            clauses.append(f"status = ANY(${len(params)}::text[])")
        if user_id is not None:
            params.append(user_id)
            clauses.append(f"user_id = ${len(params)}")
        query = "SELECT * FROM automation_workflows"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY updated_at DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._workflow(r) for r in rows]

    async def record_run(
        self, workflow_id: str, finished_at: datetime, summary: dict[str, Any]
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE automation_workflows SET last_run_at = $1, run_summary = $2::jsonb WHERE id = $3",
                ensure_utc(finished_at),
                _dumps(summary),
                workflow_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_contact(self, contact: Contact) -> Contact:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO automation_contacts ({_CONTACT_COLUMNS}) VALUES ({_CONTACT_VALUES})",
                *self._contact_params(contact),
            )
        finally:
            await conn.close()
        return contact.model_copy(update={"email": contact.email.strip().lower()})

    async def save_contact(self, contact: Contact) -> Contact:
        conn = await self._connect()
        try:
            await conn.execute(
                f"""
                INSERT INTO automation_contacts ({_CONTACT_COLUMNS}) VALUES ({_CONTACT_VALUES})
                ON CONFLICT (id) DO UPDATE SET
                    email = EXCLUDED.email,
                    full_name = EXCLUDED.full_name,
                    status = EXCLUDED.status,
                    current_step = EXCLUDED.current_step,
                    next_run_at = EXCLUDED.next_run_at,
                    processing_started_at = EXCLUDED.processing_started_at,
                    completed_at = EXCLUDED.completed_at,
                    last_error = EXCLUDED.last_error,
                    state = EXCLUDED.state
                """,
                *self._contact_params(contact),
            )
        finally:
            await conn.close()
        return contact

    async def get_contact(self, contact_id: str) -> Contact | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM automation_contacts WHERE id = $1", contact_id
            )
        finally:
            await conn.close()
        return self._contact(row) if row else None

    async def find_contact(self, workflow_id: str, email: str) -> Contact | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM automation_contacts WHERE workflow_id = $1 AND email = $2",
                workflow_id,
                email.strip().lower(),
            )
        finally:
            await conn.close()
        return self._contact(row) if row else None

    async def list_contacts(self, workflow_id: str) -> list[Contact]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM automation_contacts WHERE workflow_id = $1 ORDER BY created_at",
                workflow_id,
            )
        finally:
            await conn.close()
        return [self._contact(r) for r in rows]

    async def fetch_due_contacts(
        self, workflow_id: str, now: datetime, limit: int
    ) -> list[Contact]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM automation_contacts
                WHERE workflow_id = $1 AND status = 'active'
                  AND next_run_at IS NOT NULL AND next_run_at <= $2
                ORDER BY next_run_at ASC
                LIMIT $3
                """,
                workflow_id,
                ensure_utc(now),
                limit,
            )
        finally:
            await conn.close()
        return [self._contact(r) for r in rows]

    async def claim_contact(self, contact_id: str, now: datetime) -> Contact | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                UPDATE automation_contacts
                SET status = 'processing', processing_started_at = $2
                WHERE id = $1 AND status = 'active'
                RETURNING *
                """,
                contact_id,
                ensure_utc(now),
            )
        finally:
            await conn.close()
        return self._contact(row) if row else None

    async def release_stale_contacts(
        self, workflow_id: str, older_than: datetime
    ) -> int:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE automation_contacts
                SET status = 'active', processing_started_at = NULL
                WHERE workflow_id = $1 AND status = 'processing'
                  AND processing_started_at < $2
                """,
                workflow_id,
                ensure_utc(older_than),
            )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "UPDATE 3"
        return int(result.split()[-1])

    async def apply_transition(
        self,
        contact_id: str,
        update: ContactUpdate,
        message: EmailMessage | None = None,
    ) -> None:
        assignments: list[str] = []
        params: list[Any] = []
        for name, value in update.changes().items():
            cast = ""
            if isinstance(value, ContactState):
                value = _dumps(value.model_dump(mode="json"))
                cast = "::jsonb"
            elif isinstance(value, ContactStatus):
                value = value.value
            elif isinstance(value, datetime):
                value = ensure_utc(value)
            params.append(value)
            assignments.append(f"{name} = ${len(params)}{cast}")
        conn = await self._connect()
        try:
            async with conn.transaction():
                if assignments:
                    params.append(contact_id)
                    await conn.execute(
                        f"UPDATE automation_contacts SET {', '.join(assignments)} "
                        f"WHERE id = ${len(params)}",
                        *params,
                    )
                if message is not None:
                    await self._insert_message(conn, message)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def get_sender_config(
        self, user_id: str, config_id: str | None = None
    ) -> SenderConfig | None:
        conn = await self._connect()
        try:
            row = None
            if config_id:
                row = await conn.fetchrow(
                    "SELECT * FROM email_configs WHERE id = $1 AND user_id = $2",
                    config_id,
                    user_id,
                )
            if row is None:
                row = await conn.fetchrow(
                    "SELECT * FROM email_configs WHERE user_id = $1 ORDER BY created_at DESC LIMIT 1",
                    user_id,
                )
        finally:
            await conn.close()
        return SenderConfig(**dict(row)) if row else None

    async def get_template(self, user_id: str, template_id: str) -> EmailTemplate | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM email_templates WHERE id = $1 AND user_id = $2",
                template_id,
                user_id,
            )
        finally:
            await conn.close()
        return EmailTemplate(**dict(row)) if row else None

    async def insert_message(self, message: EmailMessage) -> None:
        conn = await self._connect()
        try:
            await self._insert_message(conn, message)
        finally:
            await conn.close()

    async def count_inbound_messages(
        self,
        user_id: str,
        from_email: str,
        since: datetime | None = None,
        to_email: str | None = None,
    ) -> int:
        query = (
            "SELECT COUNT(*) FROM email_messages WHERE user_id = $1 "
            "AND direction = 'inbound' AND lower(from_email) = lower($2)"
        )
        params: list[Any] = [user_id, from_email]
        if since is not None:
            params.append(ensure_utc(since))
            query += f" AND date >= ${len(params)}"
        if to_email:
            params.append(to_email)
            query += f" AND lower(to_email) = lower(${len(params)})"
        conn = await self._connect()
        try:
            count = await conn.fetchval(query, *params)
        finally:
            await conn.close()
        return int(count or 0)

    # ------------------------------------------------------------------
    async def append_log(self, entry: AuditEntry) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO automation_logs (workflow_id, contact_id, user_id, event_type,
                    step_index, message, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
                """,
                entry.workflow_id,
                entry.contact_id,
                entry.user_id,
                entry.event_type,
                entry.step_index,
                entry.message,
                _dumps(entry.metadata),
                ensure_utc(entry.created_at),
            )
        finally:
            await conn.close()

    async def list_logs(
        self, workflow_id: str, contact_id: str | None = None
    ) -> list[AuditEntry]:
        conn = await self._connect()
        try:
            if contact_id is None:
                rows = await conn.fetch(
                    "SELECT * FROM automation_logs WHERE workflow_id = $1 ORDER BY id",
                    workflow_id,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM automation_logs WHERE workflow_id = $1 AND contact_id = $2 ORDER BY id",
                    workflow_id,
                    contact_id,
                )
        finally:
            await conn.close()
        return [
            AuditEntry(
                id=r["id"],
                workflow_id=r["workflow_id"],
                contact_id=r["contact_id"],
                user_id=r["user_id"],
                event_type=r["event_type"],
                step_index=r["step_index"],
                message=r["message"] or "",
                metadata=_loads(r["metadata"], {}),
                created_at=r["created_at"],
            )
            for r in rows
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
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO user_credits (user_id, credits) VALUES ($1, 0) ON CONFLICT DO NOTHING",
                    user_id,
                )
                balance = await conn.fetchval(
                    "SELECT credits FROM user_credits WHERE user_id = $1 FOR UPDATE", user_id
                )
                existing = await conn.fetchval(
                    "SELECT 1 FROM credit_ledger WHERE reference_id = $1 AND entry_kind = 'debit'",
                    reference_id,
                )
                if existing:
                    return CreditResult(allowed=True, credits_remaining=balance)
                if balance < amount:
                    return CreditResult(
                        allowed=False,
                        credits_remaining=balance,
                        message="Insufficient credits",
                    )
                await conn.execute(
                    "UPDATE user_credits SET credits = credits - $2 WHERE user_id = $1",
                    user_id,
                    amount,
                )
                await conn.execute(
                    """
                    INSERT INTO credit_ledger (reference_id, entry_kind, user_id, amount,
                        event_type, metadata)
                    VALUES ($1, 'debit', $2, $3, $4, $5::jsonb)
                    """,
                    reference_id,
                    user_id,
                    amount,
                    event_type,
                    _dumps(metadata or {}),
                )
                return CreditResult(allowed=True, credits_remaining=balance - amount)
        finally:
            await conn.close()

    async def refund_user_credits(
        self,
        user_id: str,
        amount: int,
        event_type: str,
        reference_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO user_credits (user_id, credits) VALUES ($1, 0) ON CONFLICT DO NOTHING",
                    user_id,
                )
                balance = await conn.fetchval(
                    "SELECT credits FROM user_credits WHERE user_id = $1 FOR UPDATE", user_id
                )
                debit = await conn.fetchval(
                    "SELECT amount FROM credit_ledger WHERE reference_id = $1 AND entry_kind = 'debit'",
                    reference_id,
                )
                refunded = await conn.fetchval(
                    "SELECT 1 FROM credit_ledger WHERE reference_id = $1 AND entry_kind = 'refund'",
                    reference_id,
                )
                if debit is None or refunded:
                    return balance
                refund = min(amount, debit)
                await conn.execute(
                    "UPDATE user_credits SET credits = credits + $2 WHERE user_id = $1",
                    user_id,
                    refund,
                )
                await conn.execute(
                    """
                    INSERT INTO credit_ledger (reference_id, entry_kind, user_id, amount,
                        event_type, metadata)
                    VALUES ($1, 'refund', $2, $3, $4, $5::jsonb)
                    """,
                    reference_id,
                    user_id,
                    refund,
                    event_type,
                    _dumps(metadata or {}),
                )
                return balance + refund
        finally:
            await conn.close()

    async def enroll_workflow_contacts(
        self, workflow_id: str, limit: int, now: datetime
    ) -> int:
        workflow = await self.get_workflow(workflow_id)
        if workflow is None or not workflow.trigger_list_id:
            return 0
        conn = await self._connect()
        try:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    SELECT m.* FROM email_list_members m
                    WHERE m.list_id = $1
                      AND NOT EXISTS (
                        SELECT 1 FROM automation_contacts c
                        WHERE c.workflow_id = $2 AND c.email = lower(trim(m.email))
                      )
                    ORDER BY m.id
                    """,
                    workflow.trigger_list_id,
                    workflow_id,
                )
                added = 0
                for row in rows:
                    if added >= limit:
                        break
                    member = ListMember(
                        list_id=row["list_id"],
                        user_id=row["user_id"],
                        email=row["email"],
                        name=row["name"] or "",
                        company=row["company"],
                        job_title=row["job_title"],
                    )
                    contact = enrollment_contact(workflow, member, now)
                    if not contact.email:
                        continue
                    status = await conn.execute(
                        f"INSERT INTO automation_contacts ({_CONTACT_COLUMNS}) "
                        f"VALUES ({_CONTACT_VALUES}) ON CONFLICT (workflow_id, email) DO NOTHING",
                        *self._contact_params(contact),
                    )
                    if status.endswith(" 1"):
                        added += 1
        finally:
            await conn.close()
        return added

    # ------------------------------------------------------------------
    async def save_sender_config(self, config: SenderConfig) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO email_configs (id, user_id, smtp_host, smtp_port, smtp_username,
                    smtp_password, security, sender_name, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (id) DO UPDATE SET
                    smtp_host = EXCLUDED.smtp_host,
                    smtp_port = EXCLUDED.smtp_port,
                    smtp_username = EXCLUDED.smtp_username,
                    smtp_password = EXCLUDED.smtp_password,
                    security = EXCLUDED.security,
                    sender_name = EXCLUDED.sender_name
                """,
                config.id,
                config.user_id,
                config.smtp_host,
                config.smtp_port,
                config.smtp_username,
                config.smtp_password,
                config.security,
                config.sender_name,
                ensure_utc(config.created_at),
            )
        finally:
            await conn.close()

    async def save_template(self, template: EmailTemplate) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO email_templates (id, user_id, subject, content, is_html)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE SET
                    subject = EXCLUDED.subject,
                    content = EXCLUDED.content,
                    is_html = EXCLUDED.is_html
                """,
                template.id,
                template.user_id,
                template.subject,
                template.content,
                template.is_html,
            )
        finally:
            await conn.close()

    async def add_list_member(self, member: ListMember) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO email_list_members (list_id, user_id, email, name, company, job_title) "
                "VALUES ($1, $2, $3, $4, $5, $6)",
                member.list_id,
                member.user_id,
                member.email,
                member.name,
                member.company,
                member.job_title,
            )
        finally:
            await conn.close()

    async def grant_credits(self, user_id: str, amount: int) -> int:
        conn = await self._connect()
        try:
            balance = await conn.fetchval(
                """
                INSERT INTO user_credits (user_id, credits) VALUES ($1, $2)
                ON CONFLICT (user_id) DO UPDATE SET credits = user_credits.credits + EXCLUDED.credits
                RETURNING credits
                """,
                user_id,
                amount,
            )
        finally:
            await conn.close()
        return int(balance)

    async def get_credit_balance(self, user_id: str) -> int:
        conn = await self._connect()
        try:
            balance = await conn.fetchval(
                "SELECT credits FROM user_credits WHERE user_id = $1", user_id
            )
        finally:
            await conn.close()
        return int(balance or 0)
