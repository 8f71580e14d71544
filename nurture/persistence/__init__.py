"""Persistence layer for Nurture automations."""

from __future__ import annotations

import os
from typing import Optional

from ..config import NurtureConfig, load_config
from .inmemory import InMemoryAutomationRepository
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
)
from .postgres import PostgresAutomationRepository
from .repository import AutomationRepository
from .sqlite import SQLiteAutomationRepository

_repository_instance: AutomationRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[NurtureConfig] = None
) -> AutomationRepository:
    """Factory function to obtain an automation repository.

    The backend is selected from ``database_url``, which can be provided
    explicitly, via ``NURTURE_DATABASE_URL`` or ``DATABASE_URL``, or from the
    loaded configuration. When no database is configured, an in-memory
    repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("NURTURE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryAutomationRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteAutomationRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _repository_instance = PostgresAutomationRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository (used between CLI invocations and tests)."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "AuditEntry",
    "AutomationRepository",
    "Contact",
    "ContactState",
    "ContactStatus",
    "ContactUpdate",
    "CreditResult",
    "EmailMessage",
    "EmailTemplate",
    "InMemoryAutomationRepository",
    "ListMember",
    "PostgresAutomationRepository",
    "SQLiteAutomationRepository",
    "SenderConfig",
    "Workflow",
    "WorkflowStatus",
    "get_repository",
    "reset_repository",
]
