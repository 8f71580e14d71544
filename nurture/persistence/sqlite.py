"""SQLite implementation of the automation repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from ..utils.clock import parse_timestamp, utcnow
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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS automation_workflows (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        trigger_type TEXT NOT NULL,
        trigger_list_id TEXT,
        trigger_filters TEXT NOT NULL DEFAULT '{}',
        flow TEXT NOT NULL DEFAULT '[]',
        settings TEXT NOT NULL DEFAULT '{}',
        last_run_at TEXT,
        run_summary TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_contacts (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        email TEXT NOT NULL,
        full_name TEXT,
        status TEXT NOT NULL,
        current_step INTEGER NOT NULL DEFAULT 0,
        next_run_at TEXT,
        processing_started_at TEXT,
        completed_at TEXT,
        last_error TEXT,
        state TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        UNIQUE (workflow_id, email)
    )
    """,
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
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_templates (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        subject TEXT NOT NULL,
        content TEXT NOT NULL,
        is_html INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_messages (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        config_id TEXT,
        from_email TEXT NOT NULL,
        to_email TEXT NOT NULL,
        subject TEXT,
        body TEXT,
        date TEXT NOT NULL,
        folder TEXT,
        message_id TEXT,
        in_reply_to TEXT,
        refs TEXT NOT NULL DEFAULT '[]',
        thread_id TEXT,
        direction TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_list_members (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        list_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        email TEXT NOT NULL,
        name TEXT,
        company TEXT,
        job_title TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workflow_id TEXT NOT NULL,
        contact_id TEXT,
        user_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        step_index INTEGER,
        message TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credits (
        user_id TEXT PRIMARY KEY,
        credits INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_ledger (
        reference_id TEXT NOT NULL,
        entry_kind TEXT NOT NULL,
        user_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        event_type TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        PRIMARY KEY (reference_id, entry_kind)
    )
    """,
]

_CONTACT_COLUMNS = (
    "id, workflow_id, user_id, email, full_name, status, current_step, next_run_at, "
    "processing_started_at, completed_at, last_error, state, created_at"
)


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC text so lexical order matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _json(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    return json.loads(value)


class SQLiteAutomationRepository(AutomationRepository):
    """Persist automation state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in _SCHEMA:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _transaction(self, fn, *args: Any) -> Any:
        """Run ``fn(cursor, *args)`` under the lock in one committed transaction."""
        with self._lock:
            cur = self._conn.cursor()
            try:
                result = fn(cur, *args)
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()
            return result

    @staticmethod
    def _workflow(row: sqlite3.Row) -> Workflow:
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
            last_run_at=parse_timestamp(row["last_run_at"]),
            run_summary=_loads(row["run_summary"], None),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _contact(row: sqlite3.Row) -> Contact:
        return Contact(
            id=row["id"],
            workflow_id=row["workflow_id"],
            user_id=row["user_id"],
            email=row["email"],
            full_name=row["full_name"],
            status=row["status"],
            current_step=row["current_step"],
            next_run_at=parse_timestamp(row["next_run_at"]),
            processing_started_at=parse_timestamp(row["processing_started_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
            last_error=row["last_error"],
            state=_loads(row["state"], {}),
            created_at=parse_timestamp(row["created_at"]),
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
            _ts(contact.next_run_at),
            _ts(contact.processing_started_at),
            _ts(contact.completed_at),
            contact.last_error,
            _json(contact.state.model_dump(mode="json")),
            _ts(contact.created_at),
        )

    @staticmethod
    def _insert_message(cur: sqlite3.Cursor, message: EmailMessage) -> None:
        cur.execute(
            """
            INSERT INTO email_messages (id, user_id, config_id, from_email, to_email, subject,
                body, date, folder, message_id, in_reply_to, refs, thread_id, direction)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                message.user_id,
                message.config_id,
                message.from_email,
                message.to_email,
                message.subject,
                message.body,
                _ts(message.date),
                message.folder,
                message.message_id,
                message.in_reply_to,
                _json(message.references),
                message.thread_id,
                message.direction,
            ),
        )

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO automation_workflows (id, user_id, name, status, trigger_type,
                trigger_list_id, trigger_filters, flow, settings, last_run_at, run_summary, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            workflow.id,
            workflow.user_id,
            workflow.name,
            workflow.status.value,
            workflow.trigger_type,
            workflow.trigger_list_id,
            _json(workflow.trigger_filters),
            _json(workflow.flow),
            _json(workflow.settings),
            _ts(workflow.last_run_at),
            _json(workflow.run_summary) if workflow.run_summary is not None else None,
            _ts(workflow.updated_at),
        )
        return workflow

    async def get_workflow(
        self, workflow_id: str, user_id: str | None = None
    ) -> Workflow | None:
        query = "SELECT * FROM automation_workflows WHERE id = ?"
        params: list[Any] = [workflow_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return self._workflow(row) if row else None

    async def list_workflows(
        self,
        statuses: Iterable[WorkflowStatus] | None = None,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        query = "SELECT * FROM automation_workflows WHERE 1 = 1"
        params: list[Any] = []
        if statuses is not None:
            wanted = [s.value for s in statuses]
            if not wanted:
                return []
            query += f" AND status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY updated_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._workflow(r) for r in rows]

    async def record_run(
        self, workflow_id: str, finished_at: datetime, summary: dict[str, Any]
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE automation_workflows SET last_run_at = ?, run_summary = ? WHERE id = ?",
            _ts(finished_at),
            _json(summary),
            workflow_id,
        )

    # ------------------------------------------------------------------
    # Contacts
    async def create_contact(self, contact: Contact) -> Contact:
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO automation_contacts ({_CONTACT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            *self._contact_params(contact),
        )
        return contact.model_copy(update={"email": contact.email.strip().lower()})

    async def save_contact(self, contact: Contact) -> Contact:
        await asyncio.to_thread(
            self._execute,
            f"INSERT OR REPLACE INTO automation_contacts ({_CONTACT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            *self._contact_params(contact),
        )
        return contact

    async def get_contact(self, contact_id: str) -> Contact | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM automation_contacts WHERE id = ?", contact_id
        )
        return self._contact(row) if row else None

    async def find_contact(self, workflow_id: str, email: str) -> Contact | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM automation_contacts WHERE workflow_id = ? AND email = ?",
            workflow_id,
            email.strip().lower(),
        )
        return self._contact(row) if row else None

    async def list_contacts(self, workflow_id: str) -> list[Contact]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM automation_contacts WHERE workflow_id = ? ORDER BY created_at",
            workflow_id,
        )
        return [self._contact(r) for r in rows]

    async def fetch_due_contacts(
        self, workflow_id: str, now: datetime, limit: int
    ) -> list[Contact]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM automation_contacts
            WHERE workflow_id = ? AND status = 'active'
              AND next_run_at IS NOT NULL AND next_run_at <= ?
            ORDER BY next_run_at ASC
            LIMIT ?
            """,
            workflow_id,
            _ts(now),
            limit,
        )
        return [self._contact(r) for r in rows]

    async def claim_contact(self, contact_id: str, now: datetime) -> Contact | None:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE automation_contacts
            SET status = 'processing', processing_started_at = ?
            WHERE id = ? AND status = 'active'
            """,
            _ts(now),
            contact_id,
        )
        if updated != 1:
            return None
        return await self.get_contact(contact_id)

    async def release_stale_contacts(
        self, workflow_id: str, older_than: datetime
    ) -> int:
        return await asyncio.to_thread(
            self._execute,
            """
            UPDATE automation_contacts
            SET status = 'active', processing_started_at = NULL
            WHERE workflow_id = ? AND status = 'processing'
              AND processing_started_at < ?
            """,
            workflow_id,
            _ts(older_than),
        )

    async def apply_transition(
        self,
        contact_id: str,
        update: ContactUpdate,
        message: EmailMessage | None = None,
    ) -> None:
        changes = update.changes()
        assignments: list[str] = []
        params: list[Any] = []
        for name, value in changes.items():
            if isinstance(value, ContactState):
                value = _json(value.model_dump(mode="json"))
            elif isinstance(value, ContactStatus):
                value = value.value
            elif isinstance(value, datetime):
                value = _ts(value)
            assignments.append(f"{name} = ?")
            params.append(value)

        def _apply(cur: sqlite3.Cursor) -> None:
            if assignments:
                cur.execute(
                    f"UPDATE automation_contacts SET {', '.join(assignments)} WHERE id = ?",
                    (*params, contact_id),
                )
            if message is not None:
                self._insert_message(cur, message)

        await asyncio.to_thread(self._transaction, _apply)

    # ------------------------------------------------------------------
    # Mail data
    async def get_sender_config(
        self, user_id: str, config_id: str | None = None
    ) -> SenderConfig | None:
        row = None
        if config_id:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT * FROM email_configs WHERE id = ? AND user_id = ?",
                config_id,
                user_id,
            )
        if row is None:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT * FROM email_configs WHERE user_id = ? ORDER BY created_at DESC LIMIT 1",
                user_id,
            )
        if row is None:
            return None
        return SenderConfig(
            id=row["id"],
            user_id=row["user_id"],
            smtp_host=row["smtp_host"],
            smtp_port=row["smtp_port"],
            smtp_username=row["smtp_username"],
            smtp_password=row["smtp_password"],
            security=row["security"],
            sender_name=row["sender_name"],
            created_at=parse_timestamp(row["created_at"]),
        )

    async def get_template(self, user_id: str, template_id: str) -> EmailTemplate | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM email_templates WHERE id = ? AND user_id = ?",
            template_id,
            user_id,
        )
        if row is None:
            return None
        return EmailTemplate(
            id=row["id"],
            user_id=row["user_id"],
            subject=row["subject"],
            content=row["content"],
            is_html=None if row["is_html"] is None else bool(row["is_html"]),
        )

    async def insert_message(self, message: EmailMessage) -> None:
        await asyncio.to_thread(self._transaction, self._insert_message, message)

    async def count_inbound_messages(
        self,
        user_id: str,
        from_email: str,
        since: datetime | None = None,
        to_email: str | None = None,
    ) -> int:
        query = (
            "SELECT COUNT(*) AS n FROM email_messages WHERE user_id = ? "
            "AND direction = 'inbound' AND lower(from_email) = lower(?)"
        )
        params: list[Any] = [user_id, from_email]
        if since is not None:
            query += " AND date >= ?"
            params.append(_ts(since))
        if to_email:
            query += " AND lower(to_email) = lower(?)"
            params.append(to_email)
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Audit log
    async def append_log(self, entry: AuditEntry) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO automation_logs (workflow_id, contact_id, user_id, event_type,
                step_index, message, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            entry.workflow_id,
            entry.contact_id,
            entry.user_id,
            entry.event_type,
            entry.step_index,
            entry.message,
            _json(entry.metadata),
            _ts(entry.created_at),
        )

    async def list_logs(
        self, workflow_id: str, contact_id: str | None = None
    ) -> list[AuditEntry]:
        query = "SELECT * FROM automation_logs WHERE workflow_id = ?"
        params: list[Any] = [workflow_id]
        if contact_id is not None:
            query += " AND contact_id = ?"
            params.append(contact_id)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY id", *params)
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
                created_at=parse_timestamp(r["created_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Atomic operations
    @staticmethod
    def _balance(cur: sqlite3.Cursor, user_id: str) -> int:
        cur.execute("SELECT credits FROM user_credits WHERE user_id = ?", (user_id,))
        row = cur.fetchone()
        return int(row["credits"]) if row else 0

    @staticmethod
    def _ledger_entry(cur: sqlite3.Cursor, reference_id: str, kind: str) -> sqlite3.Row | None:
        cur.execute(
            "SELECT * FROM credit_ledger WHERE reference_id = ? AND entry_kind = ?",
            (reference_id, kind),
        )
        return cur.fetchone()

    @staticmethod
    def _write_ledger(
        cur: sqlite3.Cursor,
        reference_id: str,
        kind: str,
        user_id: str,
        amount: int,
        event_type: str,
        metadata: dict[str, Any] | None,
        balance: int,
    ) -> None:
        cur.execute(
            """
            INSERT INTO user_credits (user_id, credits) VALUES (?, ?)
            ON CONFLICT(user_id) DO UPDATE SET credits = excluded.credits
            """,
            (user_id, balance),
        )
        cur.execute(
            """
            INSERT INTO credit_ledger (reference_id, entry_kind, user_id, amount,
                event_type, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (reference_id, kind, user_id, amount, event_type, _json(metadata or {}), _ts(utcnow())),
        )

    async def consume_user_credits(
        self,
        user_id: str,
        amount: int,
        event_type: str,
        reference_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> CreditResult:
        def _consume(cur: sqlite3.Cursor) -> CreditResult:
            balance = self._balance(cur, user_id)
            if self._ledger_entry(cur, reference_id, "debit") is not None:
                return CreditResult(allowed=True, credits_remaining=balance)
            if balance < amount:
                return CreditResult(
                    allowed=False, credits_remaining=balance, message="Insufficient credits"
                )
            self._write_ledger(
                cur, reference_id, "debit", user_id, amount, event_type, metadata, balance - amount
            )
            return CreditResult(allowed=True, credits_remaining=balance - amount)

        return await asyncio.to_thread(self._transaction, _consume)

    async def refund_user_credits(
        self,
        user_id: str,
        amount: int,
        event_type: str,
        reference_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        def _refund(cur: sqlite3.Cursor) -> int:
            balance = self._balance(cur, user_id)
            debit = self._ledger_entry(cur, reference_id, "debit")
            if debit is None or self._ledger_entry(cur, reference_id, "refund") is not None:
                return balance
            refund = min(amount, int(debit["amount"]))
            self._write_ledger(
                cur, reference_id, "refund", user_id, refund, event_type, metadata, balance + refund
            )
            return balance + refund

        return await asyncio.to_thread(self._transaction, _refund)

    async def enroll_workflow_contacts(
        self, workflow_id: str, limit: int, now: datetime
    ) -> int:
        workflow = await self.get_workflow(workflow_id)
        if workflow is None or not workflow.trigger_list_id:
            return 0

        def _enroll(cur: sqlite3.Cursor) -> int:
            cur.execute(
                """
                SELECT m.* FROM email_list_members m
                WHERE m.list_id = ?
                  AND NOT EXISTS (
                    SELECT 1 FROM automation_contacts c
                    WHERE c.workflow_id = ? AND c.email = lower(trim(m.email))
                  )
                ORDER BY m.id
                """,
                (workflow.trigger_list_id, workflow_id),
            )
            added = 0
            seen: set[str] = set()
            for row in cur.fetchall():
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
                if not contact.email or contact.email in seen:
                    continue
                cur.execute(
                    f"INSERT INTO automation_contacts ({_CONTACT_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._contact_params(contact),
                )
                seen.add(contact.email)
                added += 1
            return added

        return await asyncio.to_thread(self._transaction, _enroll)

    # ------------------------------------------------------------------
    # Administrative writes
    async def save_sender_config(self, config: SenderConfig) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO email_configs (id, user_id, smtp_host, smtp_port,
                smtp_username, smtp_password, security, sender_name, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            config.id,
            config.user_id,
            config.smtp_host,
            config.smtp_port,
            config.smtp_username,
            config.smtp_password,
            config.security,
            config.sender_name,
            _ts(config.created_at),
        )

    async def save_template(self, template: EmailTemplate) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO email_templates (id, user_id, subject, content, is_html) "
            "VALUES (?, ?, ?, ?, ?)",
            template.id,
            template.user_id,
            template.subject,
            template.content,
            None if template.is_html is None else int(template.is_html),
        )

    async def add_list_member(self, member: ListMember) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO email_list_members (list_id, user_id, email, name, company, job_title) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            member.list_id,
            member.user_id,
            member.email,
            member.name,
            member.company,
            member.job_title,
        )

    async def grant_credits(self, user_id: str, amount: int) -> int:
        def _grant(cur: sqlite3.Cursor) -> int:
            balance = self._balance(cur, user_id) + amount
            cur.execute(
                """
                INSERT INTO user_credits (user_id, credits) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET credits = excluded.credits
                """,
                (user_id, balance),
            )
            return balance

        return await asyncio.to_thread(self._transaction, _grant)

    async def get_credit_balance(self, user_id: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT credits FROM user_credits WHERE user_id = ?", user_id
        )
        return int(row["credits"]) if row else 0
