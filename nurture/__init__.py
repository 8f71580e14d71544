"""Nurture: per-contact execution engine for email automation workflows."""

from .contracts import RunnerRequest, RunnerResponse, RunSummary
from .dispatch import WorkflowOrchestrator
from .execute import ContactInterpreter
from .graph import normalize_flow, normalize_graph
from .persistence import get_repository
from .scheduler import ContactScheduler
from .service import AutomationService, open_service
from .transports import get_mail_transport

__version__ = "0.1.0"
__all__ = [
    "AutomationService",
    "ContactInterpreter",
    "ContactScheduler",
    "RunSummary",
    "RunnerRequest",
    "RunnerResponse",
    "WorkflowOrchestrator",
    "get_mail_transport",
    "get_repository",
    "normalize_flow",
    "normalize_graph",
    "open_service",
]
