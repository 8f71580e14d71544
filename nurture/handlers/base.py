"""Shared types for node handlers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from .. import constants
from ..audit import AuditLog
from ..config import RunnerConfig
from ..contracts import GraphNode
from ..credits import CreditLedger
from ..persistence.models import Contact, ContactState, EmailMessage, Workflow
from ..persistence.repository import AutomationRepository
from ..transports.base import MailTransport


class Transition(str, Enum):
    """How the interpreter moves a contact after a handler returns."""

    ADVANCE = "advance"
    YIELD = "yield"
    WAIT = "wait"
    RETRY = "retry"
    COMPLETE = "complete"
    FAIL = "fail"


class AuditEvent(BaseModel):
    event_type: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StepOutcome(BaseModel):
    """Result of running one node for one contact."""

    transition: Transition
    state: ContactState
    branch: Optional[str] = None
    run_at: Optional[datetime] = None
    error: Optional[str] = None
    sent: bool = False
    credit_blocked: bool = False
    message: Optional[EmailMessage] = None
    events: List[AuditEvent] = Field(default_factory=list)


@dataclass
class EngineServices:
    """Collaborators shared by every handler invocation."""

    repository: AutomationRepository
    ledger: CreditLedger
    mail: MailTransport
    http: httpx.AsyncClient
    audit: AuditLog
    settings: RunnerConfig = field(default_factory=RunnerConfig)
    mailer_name: str = constants.MAILER_NAME


@dataclass
class StepContext:
    """Everything a handler needs to run one step.

    ``step_key`` identifies the step for credit references and webhook
    results (graph node id or legacy step id); ``wait_key`` is the marker
    under which a pending wait is stored in ``state.wait_until``.
    """

    workflow: Workflow
    contact: Contact
    state: ContactState
    config: Dict[str, Any]
    step_index: int
    step_key: str
    wait_key: str
    title: str
    now: datetime
    services: EngineServices
    node: Optional[GraphNode] = None

    @property
    def is_graph(self) -> bool:
        return self.node is not None


StepHandler = Callable[[StepContext], Awaitable[StepOutcome]]
