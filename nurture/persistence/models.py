"""Data models for persisted automation state."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..utils.clock import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    LIVE = "live"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ContactStatus(str, Enum):
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ContactStatus.COMPLETED, ContactStatus.FAILED)


class Workflow(BaseModel):
    """A user-authored automation definition."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    name: str = ""
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger_type: str = "list_joined"
    trigger_list_id: Optional[str] = None
    trigger_filters: Dict[str, Any] = Field(default_factory=dict)
    flow: List[Any] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    last_run_at: Optional[datetime] = None
    run_summary: Optional[Dict[str, Any]] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        text = str(value.value if isinstance(value, Enum) else value or "").lower()
        if text in {s.value for s in WorkflowStatus}:
            return text
        return WorkflowStatus.DRAFT

    @field_validator("trigger_filters", "settings", "flow", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any, info) -> Any:
        if value is None:
            return [] if info.field_name == "flow" else {}
        return value


class ContactState(BaseModel):
    """Per-contact JSON state.

    Reserved keys are typed fields; anything else (custom fields pushed by
    inbound webhooks, legacy markers) is kept in the extension area and
    round-trips untouched.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    current_node_id: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_events: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("custom_events", "customEvents"),
    )
    last_sent_at: Optional[datetime] = None
    last_message_id: Optional[str] = None
    thread_id: Optional[str] = None
    last_sender_email: Optional[str] = None
    last_sender_config_id: Optional[str] = None
    last_subject: Optional[str] = None
    last_clicked_at: Optional[datetime] = None
    email_clicked: Optional[bool] = None
    wait_until: Dict[str, str] = Field(default_factory=dict)
    webhook_results: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    last_webhook_status: Optional[int] = None
    last_webhook_at: Optional[datetime] = None

    @field_validator("tags", "custom_events", mode="before")
    @classmethod
    def _as_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item).strip() for item in value if str(item or "").strip()]
        return []

    @field_validator("wait_until", "webhook_results", mode="before")
    @classmethod
    def _as_dict(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    def lookup(self, key: str) -> Any:
        """Return a reserved or extension value by key, ``None`` if absent."""
        if key in type(self).model_fields:
            return getattr(self, key)
        return (self.model_extra or {}).get(key)

    def has_key(self, key: str) -> bool:
        if key in type(self).model_fields:
            return getattr(self, key) not in (None, [], {})
        return key in (self.model_extra or {})

    def merged(self, data: Dict[str, Any]) -> "ContactState":
        """Return a new state with ``data`` layered over the current values."""
        return ContactState.model_validate(
            {**self.model_dump(mode="json", exclude_none=True), **data}
        )


class Contact(BaseModel):
    """One recipient's execution instance of a workflow."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    user_id: str
    email: str
    full_name: Optional[str] = None
    status: ContactStatus = ContactStatus.ACTIVE
    current_step: int = 0
    next_run_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    state: ContactState = Field(default_factory=ContactState)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("state", mode="before")
    @classmethod
    def _state_from_none(cls, value: Any) -> Any:
        return {} if value is None else value


class ContactUpdate(BaseModel):
    """Partial contact update applied in a single write.

    Only fields explicitly set are written, so ``None`` can be used to clear
    a column.
    """

    status: Optional[ContactStatus] = None
    current_step: Optional[int] = None
    next_run_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    state: Optional[ContactState] = None

    def changes(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class SenderConfig(BaseModel):
    """SMTP account a user sends automation emails from."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    smtp_host: str
    smtp_port: int = 587
    smtp_username: str
    smtp_password: str = ""
    security: str = "TLS"
    sender_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class EmailTemplate(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    subject: str = ""
    content: str = ""
    is_html: Optional[bool] = None


class EmailMessage(BaseModel):
    """Durable record of an inbound or outbound email."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    config_id: Optional[str] = None
    from_email: str
    to_email: str
    subject: str = ""
    body: str = ""
    date: datetime = Field(default_factory=utcnow)
    folder: str = "Sent"
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: List[str] = Field(default_factory=list)
    thread_id: Optional[str] = None
    direction: str = "outbound"


class ListMember(BaseModel):
    """Prospect belonging to an email list; source for list enrollment."""

    list_id: str
    user_id: str
    email: str
    name: str = ""
    company: Optional[str] = None
    job_title: Optional[str] = None


class CreditResult(BaseModel):
    allowed: bool
    credits_remaining: int = 0
    message: str = ""


class AuditEntry(BaseModel):
    """Append-only automation log row."""

    id: Optional[int] = None
    workflow_id: str
    contact_id: Optional[str] = None
    user_id: str
    event_type: str
    step_index: Optional[int] = None
    message: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


def enrollment_contact(workflow: Workflow, member: ListMember, now: datetime) -> Contact:
    """Build the contact row created when a list member is enrolled."""
    email = member.email.strip().lower()
    return Contact(
        workflow_id=workflow.id,
        user_id=workflow.user_id,
        email=email,
        full_name=member.name or None,
        status=ContactStatus.ACTIVE,
        current_step=0,
        next_run_at=now,
        state=ContactState(
            full_name=member.name or None,
            email=email,
            company=member.company,
            job_title=member.job_title,
        ),
    )
