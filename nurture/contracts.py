"""Core contracts for the nurture automation engine."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class NodeKind(str, Enum):
    """Closed set of executable node kinds."""

    TRIGGER = "trigger"
    SEND_EMAIL = "send_email"
    WAIT = "wait"
    CONDITION = "condition"
    WEBHOOK = "webhook"
    EXIT = "exit"
    UNSUPPORTED = "unsupported"

    @classmethod
    def parse(cls, raw: Any) -> "NodeKind":
        text = str(raw or "").strip().lower()
        for kind in cls:
            if kind.value == text and kind is not cls.UNSUPPORTED:
                return kind
        return cls.UNSUPPORTED


class ConditionClause(BaseModel):
    """One branch test of a condition node."""

    handle: str
    rule: str = "email_opened"
    property_key: str = ""
    comparator: str = "exists"
    value: str = ""


class GraphNode(BaseModel):
    """A workflow step with its kind-specific configuration."""

    id: str
    kind: NodeKind
    raw_kind: str = ""
    title: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    clauses: List[ConditionClause] = Field(default_factory=list)


class GraphEdge(BaseModel):
    """Directed connection ``source -> target`` leaving through ``source_handle``."""

    id: str
    source: str
    target: str
    source_handle: str = ""


class LegacyStep(BaseModel):
    """Entry of the legacy linear ``flow`` list."""

    id: str
    name: str = ""
    type: Literal["send_email", "wait", "condition", "stop"]
    config: Dict[str, Any] = Field(default_factory=dict)


class ContactResult(BaseModel):
    """What happened to one claimed contact during a run."""

    contact_id: str
    sent: int = 0
    waiting: bool = False
    completed: bool = False
    failed: bool = False
    credit_blocked: bool = False


class RunSummary(BaseModel):
    """Per-workflow counters reported by a run."""

    model_config = ConfigDict(populate_by_name=True)

    workflow_id: str = Field(alias="workflowId")
    workflow_name: str = Field(default="", alias="workflowName")
    status: str = ""
    enrolled: int = 0
    processed: int = 0
    sent: int = 0
    waiting: int = 0
    completed: int = 0
    failed: int = 0
    credit_blocked: int = Field(default=0, alias="creditBlocked")
    skipped: bool = False

    def add(self, result: ContactResult) -> None:
        self.processed += 1
        self.sent += result.sent
        self.waiting += int(result.waiting)
        self.completed += int(result.completed)
        self.failed += int(result.failed)
        self.credit_blocked += int(result.credit_blocked)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


RunnerAction = Literal["tick", "run_now", "run_all", "enroll_now"]


class RunnerRequest(BaseModel):
    """Body accepted by the service entrypoint."""

    model_config = ConfigDict(populate_by_name=True)

    action: RunnerAction = "tick"
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    batch_size: Optional[int] = Field(default=None, alias="batchSize")
    limit: Optional[int] = None
    max_workflows: Optional[int] = Field(default=None, alias="maxWorkflows")


class RunnerResponse(BaseModel):
    """Result of a service call."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    action: str
    service: bool = False
    workflow_id: Optional[str] = Field(default=None, serialization_alias="workflowId")
    workflows: List[Dict[str, Any]] = Field(default_factory=list)
    totals: Dict[str, int] = Field(default_factory=dict)
    enrolled: Optional[int] = None

    @classmethod
    def from_summaries(
        cls, action: str, summaries: List[RunSummary], service: bool = False
    ) -> "RunnerResponse":
        keys = ("enrolled", "processed", "sent", "waiting", "completed", "failed", "creditBlocked")
        rows = [s.to_dict() for s in summaries]
        totals = {"workflows": len(rows)}
        totals.update({key: sum(int(row.get(key, 0)) for row in rows) for key in keys})
        return cls(action=action, service=service, workflows=rows, totals=totals)
